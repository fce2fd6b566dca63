"""
Runtime settings for the orchestrator and the local process driver.
"""
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """
    Tunables shared by the orchestrator, health monitor and drivers. Every
    field can be set through a STACKORCH_<FIELD> environment variable;
    constructor arguments win over the environment.

    Settings are passed explicitly to each component; there is no module-level
    instance.
    """

    model_config = SettingsConfigDict(env_prefix="STACKORCH_")

    project_name: str = "stackorch"
    state_dir: str = ".stackorch"

    # Thread pool used to start instances of one batch in parallel
    max_workers: int = Field(default=8, ge=1)

    # Seconds a driver waits for an instance to exit before killing it
    stop_timeout: float = Field(default=10.0, ge=0)

    # Upper bound for the exponential wait between restart attempts
    restart_backoff_max: float = Field(default=30.0, ge=0)

    # Retry bound used for "on-failure" without an explicit count
    default_start_retries: int = Field(default=3, ge=0)

    # Seconds between restart-policy sweeps over running instances
    supervise_interval: float = Field(default=1.0, gt=0)
    supervise: bool = True

    @classmethod
    def from_env(cls, **overrides) -> "OrchestratorSettings":
        """
        Builds settings from the environment. Overrides that are None are
        ignored, so unset CLI options fall through to STACKORCH_* variables.

        :param overrides: Explicit values that win over the environment.
        :return: Validated settings.
        """
        return cls(**{k: v for k, v in overrides.items() if v is not None})
