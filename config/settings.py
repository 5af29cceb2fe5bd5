"""Application settings via pydantic-settings (reads from .env).

All environment variables are documented here. A .env file in the working
directory is loaded automatically; real environment variables win.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Event bus (Redis pub/sub). Subjects keep the dotted fleet layout:
    # <fleet>.tasks.<domain>.<id> / <fleet>.results.<domain>.<id>
    bus_url: str = "redis://localhost:6379"
    fleet_prefix: str = "fleet-a"
    # Results history stream (capped), read by GET /api/tasks
    results_stream: str = "fleet_a_results"
    results_stream_maxlen: int = 1000
    history_limit: int = 50

    # Kubernetes (in-cluster defaults, override for local development)
    namespace: str = "roundtable"
    kube_api_url: str = ""  # empty = derive from KUBERNETES_SERVICE_HOST/PORT
    kube_token_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    kube_ca_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"
    kube_timeout_sec: float = 10.0
    log_tail_lines: int = 100
    log_timeout_sec: float = 30.0

    # Vault with daily briefings at <vault_path>/Briefings/Daily/YYYY-MM-DD.md
    vault_path: str = "/vault"

    # HTTP server
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    static_dir: str = "./static"
    allowed_origins: str = ""  # comma-separated; empty = no restriction

    # WebSocket fan-out
    ws_write_timeout_sec: float = 10.0
    introspect_timeout_sec: float = 5.0

    # Stream client / live projection
    dashboard_ws_url: str = "ws://localhost:8080/api/ws"
    dashboard_http_url: str = "http://localhost:8080"
    max_events: int = 200
    reconnect_delay_ms: int = 3000
    max_reconnect_delay_ms: int = 30000
    reconnect_jitter: bool = False
    debounce_ms: int = 300
    activity_window_sec: int = 30 * 60
    busy_window_sec: int = 60
    poll_interval_sec: float = 10.0

    # Application metadata
    app_name: str = "roundtable-dashboard"
    app_version: str = "0.1.0"
    debug: bool = False

    @property
    def origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
