"""Pipeline configuration loaded from YAML with environment overrides."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .models import Platform
from .quality import DEFAULT_GOOD_THRESHOLD

LOGGER = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_PATH = BASE_DIR / "config" / "pipeline.yaml"

# Generic placeholder/banner assets served by the marketplaces' CDNs.
KNOWN_BAD_ASSETS = [
    "4e70cc58277297de2d4741c437c9dc425c4f8adb.png",
    "e7cc244e1d0f558ae9669f57b973758bc14103ee.png",
]

DEFAULT_TRACKING_PARAMS = [
    "utm_*",
    "spm",
    "scm",
    "from",
    "src",
    "gclid",
    "fbclid",
    "tracelog",
    "_ga",
    "ref",
    "refer",
    "crm_mtn_tracelog_log_id",
    "crm_mtn_tracelog_task_id",
]


class PlatformLimits(BaseModel):
    """Per-platform request budget."""

    capacity: int = 30  # tokens per refill interval
    refill_interval: float = 60.0
    max_concurrent: int = 2
    referer: Optional[str] = None


DEFAULT_PLATFORM_LIMITS: Dict[Platform, PlatformLimits] = {
    Platform.ALIBABA: PlatformLimits(
        capacity=20, max_concurrent=2, referer="https://www.alibaba.com/"
    ),
    Platform.MADE_IN_CHINA: PlatformLimits(
        capacity=30, max_concurrent=3, referer="https://www.made-in-china.com/"
    ),
    Platform.INDIAMART: PlatformLimits(
        capacity=30, max_concurrent=3, referer="https://www.indiamart.com/"
    ),
    Platform.GLOBAL_SOURCES: PlatformLimits(
        capacity=20, max_concurrent=2, referer="https://www.globalsources.com/"
    ),
}


class BreakerSettings(BaseModel):
    failure_threshold: int = 5
    cooldown: float = 300.0
    cooldown_multiplier: float = 2.0
    max_cooldown: float = 3600.0


class OrchestratorConfig(BaseModel):
    global_concurrency: int = 5
    max_attempts: int = 3
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    backoff_jitter: float = 1.0
    fetch_timeout: float = 30.0
    render_timeout: float = 45.0
    acquire_timeout: float = 120.0
    enable_rendering: bool = True
    breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    platforms: Dict[Platform, PlatformLimits] = Field(
        default_factory=lambda: {k: v.model_copy() for k, v in DEFAULT_PLATFORM_LIMITS.items()}
    )

    def limits_for(self, platform: Platform) -> PlatformLimits:
        return self.platforms.get(platform) or PlatformLimits()

    def referers(self) -> Dict[Platform, str]:
        return {platform: limits.referer for platform, limits in self.platforms.items() if limits.referer}


class ImageConfig(BaseModel):
    cache_dir: Path = BASE_DIR / "cache"
    public_prefix: str = "/cache"
    min_dimension: int = 200
    max_aspect_ratio: float = 4.0
    banner_max_side: int = 300
    min_bytes: int = 1000
    max_bytes: int = 15_000_000
    download_timeout: float = 20.0
    preferred_size_tokens: List[str] = Field(default_factory=lambda: ["960x960"])
    fallback_size_tokens: List[str] = Field(
        default_factory=lambda: ["640x640", "600x600", "350x350"]
    )
    blocked_keywords: List[str] = Field(
        default_factory=lambda: [
            "logo",
            "badge",
            "watermark",
            "icon",
            "sprite",
            "favicon",
            "@img",
            "banner",
            "placeholder",
        ]
    )
    blocklist: List[str] = Field(default_factory=lambda: list(KNOWN_BAD_ASSETS))
    platform_blocklist: Dict[Platform, List[str]] = Field(
        default_factory=lambda: {
            Platform.ALIBABA: ["tps-960-102"],
            Platform.MADE_IN_CHINA: ["/images/default", "no-image"],
            Platform.INDIAMART: ["noimage", "default-image"],
        }
    )
    blocked_content_hashes: List[str] = Field(
        default_factory=lambda: [name.split(".")[0] for name in KNOWN_BAD_ASSETS]
    )
    normalize_formats: List[Platform] = Field(
        default_factory=lambda: [Platform.MADE_IN_CHINA]
    )


class QualityConfig(BaseModel):
    good_attribute_threshold: int = DEFAULT_GOOD_THRESHOLD


class SchedulerConfig(BaseModel):
    staleness_days: float = 30.0
    batch_size: int = 50
    max_parallel: int = 5
    checkpoint_path: Path = BASE_DIR / "data" / "backfill_checkpoint.json"


class StoreConfig(BaseModel):
    dsn: Optional[str] = None
    tracking_params: List[str] = Field(default_factory=lambda: list(DEFAULT_TRACKING_PARAMS))


class PipelineConfig(BaseModel):
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    images: ImageConfig = Field(default_factory=ImageConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)


def _apply_env(config: PipelineConfig) -> PipelineConfig:
    # Relative paths in the YAML are relative to the project root.
    if not config.images.cache_dir.is_absolute():
        config.images.cache_dir = BASE_DIR / config.images.cache_dir
    if not config.scheduler.checkpoint_path.is_absolute():
        config.scheduler.checkpoint_path = BASE_DIR / config.scheduler.checkpoint_path
    if dsn := os.getenv("PG_DSN"):
        config.store.dsn = dsn
    if cache_dir := os.getenv("CATALOG_CACHE_DIR"):
        config.images.cache_dir = Path(cache_dir)
    if checkpoint := os.getenv("CATALOG_CHECKPOINT"):
        config.scheduler.checkpoint_path = Path(checkpoint)
    return config


def load_config(path: Optional[Union[str, Path]] = None) -> PipelineConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path : str or Path, optional
        YAML file; defaults to ``$CATALOG_CONFIG`` or ``config/pipeline.yaml``

    Returns
    -------
    PipelineConfig
        Parsed configuration with environment overrides applied
    """
    load_dotenv(BASE_DIR / ".env")
    config_path = Path(path or os.getenv("CATALOG_CONFIG") or DEFAULT_CONFIG_PATH)

    if not config_path.exists():
        LOGGER.warning("Config file %s not found, using defaults", config_path)
        return _apply_env(PipelineConfig())

    with config_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    LOGGER.debug("Loaded pipeline config from %s", config_path)
    return _apply_env(PipelineConfig.model_validate(raw))
