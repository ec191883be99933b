"""Runtime settings loaded from environment variables."""
import os
from dataclasses import dataclass, field
from pathlib import Path


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    """Data-layer configuration.

    Every field maps to one environment variable; see ``from_env``.
    """

    meta_graph_url: str = "https://graph.facebook.com/v21.0"
    snapshot_backend: str = "sqlite"
    snapshot_db_path: Path = Path("data/snapshots.db")
    redis_url: str = "redis://localhost:6379"
    ephemeral_max_entries: int = 512
    rate_limit_retry_delay_s: float = 0.6
    attribution_ttl_s: float = 1800.0
    meta_access_token: str | None = None
    meta_ad_account_ids: list[str] = field(default_factory=list)
    api_key: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            meta_graph_url=os.getenv(
                "META_GRAPH_URL", "https://graph.facebook.com/v21.0"
            ).rstrip("/"),
            snapshot_backend=os.getenv("SNAPSHOT_BACKEND", "sqlite").lower(),
            snapshot_db_path=Path(os.getenv("SNAPSHOT_DB_PATH", "data/snapshots.db")),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            ephemeral_max_entries=int(os.getenv("EPHEMERAL_CACHE_MAX_ENTRIES", "512")),
            rate_limit_retry_delay_s=float(os.getenv("RATE_LIMIT_RETRY_DELAY_S", "0.6")),
            attribution_ttl_s=float(os.getenv("ATTRIBUTION_TTL_S", "1800")),
            meta_access_token=os.getenv("META_ACCESS_TOKEN") or None,
            meta_ad_account_ids=_split_csv(os.getenv("META_AD_ACCOUNT_IDS")),
            api_key=os.getenv("ADLAYER_API_KEY") or None,
        )
