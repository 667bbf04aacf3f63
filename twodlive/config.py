import os
from dataclasses import dataclass

DEFAULT_FEED_URL = "https://api.thaistock2d.com/live"


class ConfigError(RuntimeError):
    pass


@dataclass
class Settings:
    """Process-wide configuration, read once at startup."""
    token_secret: str
    password_pepper: str = ""
    token_ttl_seconds: int = 24 * 3600  # 0 disables expiry
    store_backend: str = "redis"  # 'redis' | 'sql'
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 256
    database_url: str = "sqlite:///./twodlive.db"
    db_pool_size: int = 10
    db_gate_limit: int = 0  # 0 means same as the pool size
    feed_url: str = DEFAULT_FEED_URL
    feed_timeout: float = 5.0
    register_retries: int = 5
    recent_results_limit: int = 100

    def __post_init__(self):
        if not self.token_secret:
            raise ConfigError("TOKEN_SECRET must be set")
        if not self.password_pepper:
            self.password_pepper = self.token_secret
        self.store_backend = self.store_backend.lower()
        if self.store_backend not in ("redis", "sql"):
            raise ConfigError(
                f"STORE_BACKEND must be 'redis' or 'sql', "
                f"not {self.store_backend!r}"
            )

    @classmethod
    def from_env(cls, env: dict | None = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            token_secret=env.get("TOKEN_SECRET", ""),
            password_pepper=env.get("PASSWORD_PEPPER", ""),
            token_ttl_seconds=int(env.get("TOKEN_TTL_SECONDS", "86400")),
            store_backend=env.get("STORE_BACKEND", "redis"),
            redis_url=env.get("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=int(env.get("REDIS_MAX_CONN", "256")),
            database_url=env.get("DATABASE_URL", "sqlite:///./twodlive.db"),
            db_pool_size=int(env.get("DB_POOL_SIZE", "10")),
            db_gate_limit=int(env.get("DB_GATE_LIMIT", "0")),
            feed_url=env.get("FEED_URL", DEFAULT_FEED_URL),
            feed_timeout=float(env.get("FEED_TIMEOUT", "5.0")),
            register_retries=int(env.get("REGISTER_RETRIES", "5")),
            recent_results_limit=int(env.get("RECENT_RESULTS_LIMIT", "100")),
        )
