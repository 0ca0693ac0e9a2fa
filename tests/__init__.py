"""Tests for the redis_eventbus package."""
