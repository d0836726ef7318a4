"""
Harvest configuration for the Map Warper pipeline.

Defaults mirror the production harvest of the NYPL Map Warper. Every
rate-limiting knob is carried by HarvestConfig so tests can run without
sleeping.
"""

import os
from dataclasses import dataclass, field, replace
from typing import FrozenSet, Optional

from dotenv import load_dotenv

DEFAULT_BASE_URL = "http://maps.nypl.org/warper/"
DEFAULT_DIGITAL_COLLECTIONS_URL = "http://digitalcollections.nypl.org/items/"

PER_PAGE = 250
REQUEST_TIMEOUT_S = 25.0
MAX_RETRIES = 5
SLEEP_S = 2.0  # After every catalog page

# Statuses that count as georeferenced for the unwarped_but_masked rule
WARPED_STATUSES = frozenset({"warped", "published"})


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


@dataclass(frozen=True)
class HarvestConfig:
    """Run configuration shared by the download and transform stages"""
    base_url: str = DEFAULT_BASE_URL
    digital_collections_url: str = DEFAULT_DIGITAL_COLLECTIONS_URL
    per_page: int = PER_PAGE

    # Transport discipline
    timeout_s: float = REQUEST_TIMEOUT_S
    retries: int = MAX_RETRIES
    backoff_s: float = 2.0
    max_backoff_s: float = 60.0

    # Rate limiting (seconds slept after a successful call)
    page_delay_s: float = SLEEP_S
    map_layers_delay_s: float = SLEEP_S / 10
    mask_delay_s: float = SLEEP_S / 20

    # Acquisition
    include_map_layers: bool = False

    # Validation
    warped_statuses: FrozenSet[str] = WARPED_STATUSES
    disabled_rules: FrozenSet[str] = field(default_factory=frozenset)

    # Geometry post-processing
    clip_to_world: bool = False
    clip_tolerance: float = 1e-9
    coordinate_precision: Optional[int] = None
    keep_ungeometried_objects: bool = True

    def __post_init__(self):
        if self.per_page <= 0:
            raise ValueError(f"per_page must be positive, got {self.per_page}")
        if self.retries < 1:
            raise ValueError(f"retries must be at least 1, got {self.retries}")
        if not self.base_url.endswith("/"):
            object.__setattr__(self, "base_url", self.base_url + "/")

    def without_delays(self) -> "HarvestConfig":
        """Copy of this config that never sleeps (tests, local replays)"""
        return replace(
            self,
            backoff_s=0.0,
            max_backoff_s=0.0,
            page_delay_s=0.0,
            map_layers_delay_s=0.0,
            mask_delay_s=0.0,
        )

    @classmethod
    def from_env(cls, **overrides) -> "HarvestConfig":
        """
        Build config from MAPWARPER_* environment variables.

        A .env file in the working directory is loaded first. Keyword
        overrides (typically from the CLI) win over the environment.

        Example .env:
            MAPWARPER_BASE_URL=http://maps.nypl.org/warper/
            MAPWARPER_PER_PAGE=250
            MAPWARPER_SLEEP=2
        """
        load_dotenv()

        page_delay = _env_float("MAPWARPER_SLEEP", SLEEP_S)
        disabled = os.getenv("MAPWARPER_DISABLED_RULES", "")
        warped = os.getenv("MAPWARPER_WARPED_STATUSES")

        values = dict(
            base_url=os.getenv("MAPWARPER_BASE_URL", DEFAULT_BASE_URL),
            digital_collections_url=os.getenv(
                "MAPWARPER_DIGITAL_COLLECTIONS_URL", DEFAULT_DIGITAL_COLLECTIONS_URL
            ),
            per_page=_env_int("MAPWARPER_PER_PAGE", PER_PAGE),
            timeout_s=_env_float("MAPWARPER_TIMEOUT", REQUEST_TIMEOUT_S),
            retries=_env_int("MAPWARPER_RETRIES", MAX_RETRIES),
            page_delay_s=page_delay,
            map_layers_delay_s=page_delay / 10,
            mask_delay_s=page_delay / 20,
            include_map_layers=_env_bool("MAPWARPER_INCLUDE_MAP_LAYERS", False),
            disabled_rules=frozenset(r.strip() for r in disabled.split(",") if r.strip()),
            clip_to_world=_env_bool("MAPWARPER_CLIP_TO_WORLD", False),
            coordinate_precision=_env_int("MAPWARPER_COORDINATE_PRECISION", None),
        )
        if warped:
            values["warped_statuses"] = frozenset(
                s.strip() for s in warped.split(",") if s.strip()
            )

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
