from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, SecretStr


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    LOG_LEVEL: str = Field("INFO", description="Root log level")
    DATA_DIR: str = Field("data", description="Directory holding the local state database")

    # Capture budgets
    MAX_MESSAGE_CHARS: int = Field(30_000, description="Per-message cap before the truncation marker")
    MAX_BODY_CHARS: int = Field(800_000, description="Cap on a single observed network body")
    MAX_API_CACHE_MESSAGES: int = Field(50_000, description="Message budget for the network cache")
    MAX_API_CACHE_TOTAL_CHARS: int = Field(
        12_000_000,
        description="Character budget for the network cache; crossing it marks the job partial"
    )
    MAX_STORAGE_MESSAGE_CHARS: int = Field(
        1_800_000,
        description="Above this many characters only the tail of the message list is persisted"
    )
    STORAGE_TAIL_MESSAGES: int = Field(300, description="Messages persisted once the storage budget is crossed")
    MAX_API_EVENTS: int = Field(50, description="Raw network events kept per capture context")
    MAX_SESSIONS_TO_KEEP: int = Field(5, description="Length of the recent-session ring")

    # Hydration
    HYDRATE_MAX_MS: int = Field(45_000, description="Hydration wall-clock deadline")
    HYDRATE_MAX_MS_CHATGPT: int = Field(420_000, description="Hydration deadline for ChatGPT")
    HYDRATE_WAIT_MS: int = Field(2_000, description="Per-pulse wait for a page change")
    HYDRATE_WAIT_MS_CHATGPT: int = Field(2_500, description="Per-pulse wait for ChatGPT")
    HYDRATE_MAX_NO_GROWTH: int = Field(4, description="Consecutive no-growth pulses before settling")
    HYDRATE_MAX_NO_GROWTH_CHATGPT: int = Field(25, description="No-growth threshold for ChatGPT")
    HYDRATE_PULSES: int = Field(8, description="Scroll sub-steps per pulse")
    HYDRATE_PULSES_CHATGPT: int = Field(14, description="Scroll sub-steps per pulse for ChatGPT")
    DEEP_CAPTURE_MAX_MS: int = Field(12_000, description="Deadline of the top-to-bottom scan pass")
    DEEP_CAPTURE_MAX_MS_CHATGPT: int = Field(60_000, description="Scan pass deadline for ChatGPT")
    DEEP_CAPTURE_STEP_RATIO: float = Field(0.8, description="Scan step as a fraction of the viewport")

    # Progress
    PROGRESS_THROTTLE_MS: int = Field(250, description="Minimum interval between progress writes")
    HEARTBEAT_MS: int = Field(2_000, description="Progress heartbeat interval while a job runs")
    PROGRESS_STALE_MS: int = Field(180_000, description="Age after which a progress record means the job died")

    # Snapshot
    SNAPSHOT_DEADLINE_MS: int = Field(2_000, description="Global extraction deadline")
    TRANSCRIPT_MAX_MESSAGES: int = Field(1_500, description="Transcript is dropped above this message count")
    TRANSCRIPT_MAX_CHARS: int = Field(1_200_000, description="Transcript is dropped above this character volume")
    LAST_SNAPSHOT_MAX_CHARS: int = Field(1_500_000, description="Largest artifact kept in the last-snapshot slot")
    MERGE_CLOSENESS_RATIO: float = Field(
        0.8,
        description="Secondary sources at or above this fraction of the richest count are merged in"
    )

    # Integrity seal
    DEVICE_KEY_PASSPHRASE: SecretStr | None = Field(
        None,
        description="Passphrase encrypting the stored device signing key; sealing is refused without it"
    )

# Singleton instance
settings = Settings()
