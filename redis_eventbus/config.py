import os
import threading
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def get_project_root() -> Path:
    """Get the project root directory"""
    return Path(__file__).resolve().parent.parent


PROJECT_ROOT = get_project_root()

REDIS_URL_ENV = "EVENTBUS_REDIS_URL"


class RedisSettings(BaseModel):
    url: Optional[str] = Field(
        None, description="Redis URL (redis://, rediss:// or unix://); overrides host/port/db"
    )
    host: str = Field("localhost", description="Redis host")
    port: int = Field(6379, description="Redis port")
    db: int = Field(0, description="Redis database index")
    username: Optional[str] = Field(None, description="Redis ACL username")
    password: Optional[str] = Field(None, description="Redis password")
    socket_timeout: Optional[float] = Field(
        None, description="Socket timeout in seconds (None for blocking)"
    )
    socket_connect_timeout: Optional[float] = Field(
        5.0, description="Connect timeout in seconds"
    )
    client_name: Optional[str] = Field(
        None, description="Name reported to Redis with CLIENT SETNAME"
    )

    # Unknown keys are passed through to the redis client as is.
    model_config = ConfigDict(extra="allow")

    def to_client_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``redis.asyncio.Redis`` (without ``url``)."""
        kwargs = self.model_dump(exclude={"url"}, exclude_none=True)
        if self.url:
            for key in ("host", "port", "db"):
                kwargs.pop(key, None)
        return kwargs


class LivenessSettings(BaseModel):
    timeout_ms: int = Field(
        3000, description="Default time in milliseconds to wait for pong responses"
    )
    min_response_count: int = Field(
        1, description="Default number of other live buses that must answer a ping"
    )


class LogSettings(BaseModel):
    print_level: str = Field("INFO", description="Minimum level written to stderr")
    logfile_level: str = Field("DEBUG", description="Minimum level written to the log file")


class AppConfig(BaseModel):
    redis: RedisSettings = Field(
        default_factory=RedisSettings, description="Redis connection configuration"
    )
    liveness: LivenessSettings = Field(
        default_factory=LivenessSettings, description="Ping/pong defaults"
    )
    log: LogSettings = Field(default_factory=LogSettings, description="Logging configuration")
    prefix: str = Field(
        "", description="Default external prefix prepended to every bus namespace"
    )

class Config:
    _instance = None
    _lock = threading.Lock()
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self._config = None
                    self._load_initial_config()
                    self._initialized = True

    @staticmethod
    def _get_config_path() -> Optional[Path]:
        root = PROJECT_ROOT
        config_path = root / "config" / "config.toml"
        if config_path.exists():
            return config_path
        example_path = root / "config" / "config.example.toml"
        if example_path.exists():
            return example_path
        return None

    def _load_config(self) -> dict:
        config_path = self._get_config_path()
        if config_path is None:
            return {}
        with config_path.open("rb") as f:
            return tomllib.load(f)

    def _load_initial_config(self):
        raw_config = self._load_config()

        redis_config = dict(raw_config.get("redis", {}))
        env_url = os.getenv(REDIS_URL_ENV)
        if env_url:
            redis_config["url"] = env_url

        config_dict = {
            "redis": RedisSettings(**redis_config),
            "liveness": LivenessSettings(**raw_config.get("liveness", {})),
            "log": LogSettings(**raw_config.get("log", {})),
            "prefix": raw_config.get("eventbus", {}).get("prefix", ""),
        }

        self._config = AppConfig(**config_dict)

    def reload(self) -> None:
        """Re-read the configuration file and environment"""
        with self._lock:
            self._load_initial_config()

    @property
    def redis(self) -> RedisSettings:
        return self._config.redis

    @property
    def liveness(self) -> LivenessSettings:
        return self._config.liveness

    @property
    def log(self) -> LogSettings:
        return self._config.log

    @property
    def prefix(self) -> str:
        """Get the default external channel prefix"""
        return self._config.prefix

    @property
    def root_path(self) -> Path:
        """Get the root path of the application"""
        return PROJECT_ROOT


config = Config()
