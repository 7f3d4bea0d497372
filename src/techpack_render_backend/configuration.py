from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

load_dotenv()

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]

_ENV_CONFIG = os.environ.get("TECHPACK_RENDER_CONFIG")
if _ENV_CONFIG:
    _CANDIDATE_CONFIG_PATHS.insert(0, Path(_ENV_CONFIG))

CONFIG_PATH = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)

SUPPORTED_FORMATS: List[str] = ["A4", "Letter", "Legal"]
SUPPORTED_ORIENTATIONS: List[str] = ["portrait", "landscape"]


@dataclass
class ServerConfig:
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class PoolConfig:
    size: int = 2
    submit_timeout_sec: float = 30.0
    job_timeout_sec: float = 120.0
    max_consecutive_crashes: int = 3
    cancel_poll_interval_sec: float = 0.1
    chromium_path: str = "chromium"
    chromium_args: List[str] = field(
        default_factory=lambda: [
            "--no-sandbox",
            "--disable-gpu",
            "--disable-dev-shm-usage",
            "--disable-extensions",
            "--font-render-hinting=none",
        ]
    )
    work_dir: str = str(Path(tempfile.gettempdir()) / "techpack-pdf")


@dataclass
class CacheConfig:
    backend: str = "memory"
    redis_url: Optional[str] = None
    key_prefix: str = "techpack"
    pdf_ttl_sec: int = 21600
    preview_ttl_sec: int = 1800
    info_ttl_sec: int = 300


@dataclass
class RequestBudget:
    window_sec: float = 60.0
    max_requests: int = 30


@dataclass
class AdmissionConfig:
    single: RequestBudget = field(default_factory=lambda: RequestBudget(window_sec=60.0, max_requests=30))
    bulk: RequestBudget = field(default_factory=lambda: RequestBudget(window_sec=300.0, max_requests=3))
    preview: RequestBudget = field(default_factory=lambda: RequestBudget(window_sec=60.0, max_requests=120))


@dataclass
class LayoutConfig:
    bom: int = 15
    measurements: int = 20
    how_to_measure: int = 3
    colorways: int = 4
    notes: int = 4


@dataclass
class BulkConfig:
    max_documents: int = 50
    output_root: str = "output"
    upload_to_s3: bool = False
    presigned_url_ttl_sec: int = 3600


@dataclass
class AssetsConfig:
    source: str = "local"
    local_root: str = "assets"
    s3_prefix: str = "logos/"
    default_logo: Optional[str] = None
    logos: Dict[str, str] = field(default_factory=dict)


@dataclass
class StorageConfig:
    snapshot_db_path: str = "data/snapshots.db"
    s3_bucket: str = ""


@dataclass
class ServiceConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    layout: LayoutConfig = field(default_factory=LayoutConfig)
    bulk: BulkConfig = field(default_factory=BulkConfig)
    assets: AssetsConfig = field(default_factory=AssetsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    base = OmegaConf.structured(ServiceConfig)
    if CONFIG_PATH is None:
        return base
    return OmegaConf.merge(base, OmegaConf.load(CONFIG_PATH))  # type: ignore[return-value]


def make_runtime_config(overrides: Optional[Mapping[str, Any]] = None) -> ServiceConfig:
    """
    Merge runtime overrides onto the defaults and return a typed config.

    The structured schema stays in struct mode, so an override naming a key
    the schema does not know raises instead of being silently dropped.
    """
    base = OmegaConf.merge(_load_default_config(), {})
    OmegaConf.set_struct(base, True)

    cli_config = OmegaConf.create(dict(overrides or {}))
    merged = OmegaConf.merge(base, cli_config)
    return OmegaConf.to_object(merged)  # type: ignore[return-value]


def budget_table(config: ServiceConfig) -> Dict[str, RequestBudget]:
    admission = config.admission
    return {"single": admission.single, "bulk": admission.bulk, "preview": admission.preview}
