from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Direct Messages"
    debug: bool = False

    # Paths
    data_dir: Path = Path(__file__).resolve().parent.parent.parent / "data"
    db_path: Path = Path(__file__).resolve().parent.parent.parent / "dmchat.db"

    # Backing platform
    platform: str = "local"  # local | supabase
    supabase_url: str = ""
    supabase_key: str = ""
    storage_bucket: str = "attachments"
    request_timeout: float = 15.0
    realtime_heartbeat: float = 25.0
    realtime_backoff: float = 1.0
    realtime_max_backoff: float = 30.0
    realtime_reconnect_attempts: int = 5

    # Behaviour
    search_limit: int = 20
    compensation_attempts: int = 3

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = ["*"]

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent.parent / ".env"),
        "env_prefix": "DMCHAT_",
    }


settings = Settings()
