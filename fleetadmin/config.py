from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Local state
    config_dir: str = "./config"
    database_url: str = ""
    backup_root: str = "./backups"
    secret_key: str = ""

    # Device HTTP API
    device_http_port: int = 8089
    probe_timeout: float = 5.0
    login_timeout: float = 10.0
    request_timeout: float = 10.0
    upload_min_timeout: float = 30.0
    upload_seconds_per_mb: float = 10.0
    response_body_cap: int = 1024

    # Orchestration
    scan_concurrency: int = 16
    operation_concurrency: int = 8
    max_scan_addresses: int = 1000

    # SSH
    ssh_port: int = 22
    ssh_timeout: float = 10.0
    ssh_connect_attempts: int = 2
    ssh_command_timeout: float = 60.0
    remote_service: str = "application-web"
    remote_db_path: str = "/var/lib/application-web/db/application-web.db"
    service_settle_seconds: float = 2.0
    default_ssh_username: str = "root"
    default_ssh_password: str = ""

    # Camera configuration
    camera_settle_seconds: float = 0.5

    # Application Settings
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:8080"

    class Config:
        env_file = ".env"
        env_prefix = "FLEET_"
        extra = "ignore"

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{Path(self.config_dir) / 'devices.db'}"


settings = Settings()
