# corsproxy/config.py
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Listener
    host: str = "0.0.0.0"         # HOST
    port: int = 3000              # PORT

    # "production" hides error detail and stack traces from callers.
    environment: str = "development"  # ENVIRONMENT
    log_level: str = "INFO"           # LOG_LEVEL

    # Outbound calls. The timeout bounds connect + response headers only;
    # streamed bodies may run for as long as the destination keeps sending.
    proxy_timeout: float = 30.0   # PROXY_TIMEOUT (seconds)
    max_redirects: int = 20       # MAX_REDIRECTS
    verify_tls: bool = True       # VERIFY_TLS

    # Relay
    chunk_size: int = 64 * 1024             # CHUNK_SIZE (bytes)
    max_body_bytes: int = 10 * 1024 * 1024  # MAX_BODY_BYTES (10 MB)

    # Unset: wait for every in-flight relay to finish on shutdown.
    graceful_shutdown_timeout: int | None = None  # GRACEFUL_SHUTDOWN_TIMEOUT

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    model_config = {"env_file": ".env", "case_sensitive": False}


settings = Settings()
