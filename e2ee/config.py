import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class EngineConfig:
    """
    Tunables for the engine. One instance is shared by the KeyManager,
    SessionManager and stores of a single account.
    """
    max_skip: int = 1000                 # max chain derivations to fill one gap
    max_skipped_keys: int = 2000         # skipped-key arena size per session
    skipped_key_max_age: float = 86400.0 # seconds
    num_otk: int = 20                    # one-time keys per batch
    otk_low_watermark: int = 5
    publish_retries: int = 3
    publish_backoff: float = 1.0         # seconds, multiplied by attempt number
    database_url: str = "sqlite+aiosqlite:///e2ee.db"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            max_skip=_int("E2EE_MAX_SKIP", cls.max_skip),
            max_skipped_keys=_int("E2EE_MAX_SKIPPED_KEYS", cls.max_skipped_keys),
            skipped_key_max_age=_float("E2EE_SKIPPED_KEY_MAX_AGE", cls.skipped_key_max_age),
            num_otk=_int("E2EE_NUM_OTK", cls.num_otk),
            otk_low_watermark=_int("E2EE_OTK_LOW_WATERMARK", cls.otk_low_watermark),
            publish_retries=_int("E2EE_PUBLISH_RETRIES", cls.publish_retries),
            publish_backoff=_float("E2EE_PUBLISH_BACKOFF", cls.publish_backoff),
            database_url=os.getenv("E2EE_DATABASE_URL", cls.database_url),
        )
