"""Agent configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Agent settings loaded from environment variables."""

    # HTTP surface
    agent_host: str = "127.0.0.1"
    agent_port: int = 8011

    # Lab storage layout
    lab_sources_root: str = r"C:\LabSources"
    lab_config_path: str = r"C:\LabSources\LabConfig"
    legacy_lab_config_path: str = ""  # Older config folder, read-only (e.g. ~/AutomatedLab)
    iso_path: str = r"C:\LabSources\ISOs"
    vm_path: str = r"C:\LabSources\VMs"  # Used when the app settings file has no VMPath
    log_directory: str = r"C:\LabSources\Logs"
    app_settings_path: str = ""  # Defaults to %LOCALAPPDATA%\HVLab\settings.json

    # Provisioning script
    deploy_script_name: str = "Deploy-Lab.ps1"
    deploy_script_path: str = ""  # Explicit override, skips the search
    powershell_path: str = ""  # Explicit override, skips the search
    default_domain_name: str = "lab.com"

    # Admin credential lookup (environment-style key checked before prompting)
    credential_env_var: str = "HVLAB_ADMIN_PASSWORD"

    # Post-deploy artifact check
    min_disk_image_mb: int = 500
    disk_image_pattern: str = "*.vhdx"

    # Process runner (seconds)
    process_poll_interval: float = 0.25
    process_kill_grace: float = 5.0

    # Hyper-V management calls (seconds)
    hyperv_command_timeout: float = 120.0
    stop_grace_seconds: float = 2.0

    # Live role detection
    enable_role_detection: bool = True
    role_detector_ports: list[int] = [8530, 8531]
    role_detector_timeout: float = 0.15
    role_detector_cache_ttl: float = 30.0

    # Run coordination
    lock_acquire_timeout: float = 0.0  # 0 = fail immediately when a lab is busy
    decision_timeout: float | None = None  # None = wait for the operator indefinitely
    run_history_limit: int = 20

    # Logging configuration
    log_format: str = "json"  # "json" or "text"
    log_level: str = "INFO"

    class Config:
        env_prefix = "HVLAB_"


settings = Settings()
