import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

DEFAULT_MODEL = "google/gemini-3-pro-preview"


def _clean(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    s = v.strip()
    # Strip matching single or double quotes around entire value
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        s = s[1:-1]
    return s


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    v = _clean(os.getenv(name))
    return v if v else default


def _env_int(name: str, default: int) -> int:
    v = _clean(os.getenv(name))
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {v!r})")


def _env_float(name: str, default: float) -> float:
    v = _clean(os.getenv(name))
    if not v:
        return default
    try:
        return float(v)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {v!r})")


def _env_bool(name: str, default: bool) -> bool:
    v = _clean(os.getenv(name))
    if not v:
        return default
    return v.lower() in {"1", "true", "yes", "on"}


@dataclass
class DetectionConfig:
    """Everything one detection run needs.

    from_env() reads the defaults from the environment (after loading .env);
    the CLI then overrides individual fields from its flags.
    """
    image_path: str = ""
    out_path: Optional[str] = None
    annotated_out: Optional[str] = None
    model_name: str = DEFAULT_MODEL
    description_model_name: Optional[str] = None
    api_key: Optional[str] = None
    max_kinds: int = 50
    verify_rounds: int = 2
    # Regions whose estimated instance count exceeds this are tiled; 0 turns
    # off every tiling path and kinds run on the full image only.
    tile_threshold: int = 12
    max_depth: int = 3
    min_tile_size: int = 256
    concurrency: int = 8
    kind_concurrency: int = 3
    max_retries: int = 4
    base_delay: float = 1.0
    request_timeout: float = 120.0
    multi_scale: bool = False
    only_kinds: List[str] = field(default_factory=list)
    descriptions: bool = True
    annotate: bool = False
    mock: bool = False
    events_log: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides: Any) -> "DetectionConfig":
        load_dotenv()
        cfg = cls(
            model_name=_env_str("MODEL_NAME", DEFAULT_MODEL),
            description_model_name=_env_str("DESCRIPTION_MODEL_NAME", None),
            api_key=_env_str("OPENROUTER_API_KEY", None),
            max_kinds=_env_int("MAX_KINDS", 50),
            verify_rounds=_env_int("VERIFY_ROUNDS", 2),
            tile_threshold=_env_int("TILE_THRESHOLD", 12),
            max_depth=_env_int("MAX_DEPTH", 3),
            min_tile_size=_env_int("MIN_TILE_SIZE", 256),
            concurrency=_env_int("CONCURRENCY", 8),
            kind_concurrency=_env_int("KIND_CONCURRENCY", 3),
            max_retries=_env_int("MAX_RETRIES", 4),
            base_delay=_env_float("BASE_DELAY", 1.0),
            request_timeout=_env_float("REQUEST_TIMEOUT", 120.0),
            multi_scale=_env_bool("MULTI_SCALE_DISCOVERY", False),
        )
        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(cfg, key):
                raise ValueError(f"Unknown config field: {key}")
            setattr(cfg, key, value)
        return cfg

    @property
    def tiling_enabled(self) -> bool:
        return self.tile_threshold > 0

    @property
    def effective_description_model(self) -> str:
        return self.description_model_name or self.model_name

    def validate(self) -> None:
        if not self.image_path:
            raise ValueError("image_path is required")
        if self.max_kinds < 1:
            raise ValueError(f"max_kinds must be >= 1 (got {self.max_kinds})")
        if self.verify_rounds < 0:
            raise ValueError(f"verify_rounds must be >= 0 (got {self.verify_rounds})")
        if self.tile_threshold < 0:
            raise ValueError(f"tile_threshold must be >= 0 (got {self.tile_threshold})")
        if self.max_depth < 0:
            raise ValueError(f"max_depth must be >= 0 (got {self.max_depth})")
        if self.min_tile_size < 1:
            raise ValueError(f"min_tile_size must be >= 1 (got {self.min_tile_size})")
        if self.concurrency < 1 or self.kind_concurrency < 1:
            raise ValueError("concurrency and kind_concurrency must be >= 1")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1 (got {self.max_retries})")
        if self.base_delay < 0 or self.request_timeout <= 0:
            raise ValueError("base_delay must be >= 0 and request_timeout > 0")
        if not self.mock and not self.api_key:
            raise ValueError("Missing OPENROUTER_API_KEY in environment")

    def echo(self) -> Dict[str, Any]:
        """Run parameters for the output payload; never includes the API key."""
        out = asdict(self)
        out.pop("api_key", None)
        return out
