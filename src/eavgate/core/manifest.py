import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_CACHE_TTL = 86400  # 24 hours
DEFAULT_ERROR_PATHS = ["message", "hydra:description"]


# =============================================================================
# External Sources
# =============================================================================


@dataclass
class SourceConfig:
    """An external HTTP source objects can be mirrored to."""

    name: str
    location: str  # base URL, e.g. "https://zaken.example.org/api/v1"
    auth: str = "none"  # "none" | "apikey" | "bearer" | "basic"
    credentials: list[str] = field(default_factory=list)  # env var names
    timeout: float = DEFAULT_HTTP_TIMEOUT
    headers: dict[str, str] = field(default_factory=dict)
    # Keys searched (in order) in a remote error body for a human readable message
    error_paths: list[str] = field(default_factory=lambda: list(DEFAULT_ERROR_PATHS))

    @property
    def base_url(self) -> str:
        """Resolve the base URL, honouring ``EAVGATE_SOURCE_{NAME}_URL``."""
        env_name = self.name.upper().replace("-", "_").replace(".", "_")
        url = os.environ.get(f"EAVGATE_SOURCE_{env_name}_URL") or self.location
        return url.rstrip("/")


# =============================================================================
# Manifest
# =============================================================================


@dataclass
class LoggingConfig:
    """Log output configuration."""

    level: str = "INFO"
    log_dir: str = ".eavgate/logs"
    jsonl: bool = True


@dataclass
class GatewayManifest:
    """
    Gateway configuration loaded from ``gateway.toml``.

    Holds the storage location, the base URI used for locally generated
    object URIs, cache settings and the external sources.
    """

    name: str = "gateway"
    database: str = ".eavgate/data.db"
    base_uri: str = "http://localhost/api/v1/eav"
    schema_dir: str | None = None
    redis_url: str | None = None
    cache_ttl: int = DEFAULT_CACHE_TTL
    require_organization: bool = False
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sources: dict[str, SourceConfig] = field(default_factory=dict)

    def get_source(self, name: str) -> SourceConfig | None:
        return self.sources.get(name)


def _parse_source(name: str, data: dict) -> SourceConfig:
    return SourceConfig(
        name=name,
        location=data.get("location", ""),
        auth=data.get("auth", "none"),
        credentials=list(data.get("credentials", [])),
        timeout=float(data.get("timeout", DEFAULT_HTTP_TIMEOUT)),
        headers=dict(data.get("headers", {})),
        error_paths=list(data.get("error_paths", DEFAULT_ERROR_PATHS)),
    )


def manifest_from_dict(data: dict) -> GatewayManifest:
    gateway = data.get("gateway", {})
    cache = data.get("cache", {})
    logging_data = data.get("logging", {})
    sources_data = data.get("sources", {})

    logging_config = LoggingConfig(
        level=logging_data.get("level", "INFO"),
        log_dir=logging_data.get("log_dir", ".eavgate/logs"),
        jsonl=logging_data.get("jsonl", True),
    )

    sources = {name: _parse_source(name, src) for name, src in sources_data.items()}

    manifest = GatewayManifest(
        name=gateway.get("name", "gateway"),
        database=gateway.get("database", ".eavgate/data.db"),
        base_uri=gateway.get("base_uri", "http://localhost/api/v1/eav").rstrip("/"),
        schema_dir=gateway.get("schema_dir"),
        redis_url=cache.get("redis_url"),
        cache_ttl=int(cache.get("ttl", DEFAULT_CACHE_TTL)),
        require_organization=gateway.get("require_organization", False),
        logging=logging_config,
        sources=sources,
    )
    return apply_env_overrides(manifest)


def apply_env_overrides(manifest: GatewayManifest) -> GatewayManifest:
    """Environment variables win over file values."""
    if database := os.environ.get("EAVGATE_DATABASE"):
        manifest.database = database
    if base_uri := os.environ.get("EAVGATE_BASE_URI"):
        manifest.base_uri = base_uri.rstrip("/")
    if redis_url := os.environ.get("REDIS_URL"):
        manifest.redis_url = redis_url
    return manifest


def load_manifest(path: Path) -> GatewayManifest:
    data = tomllib.loads(path.read_text(encoding="utf-8"))
    manifest = manifest_from_dict(data)
    # Resolve a relative schema_dir against the manifest location
    if manifest.schema_dir and not Path(manifest.schema_dir).is_absolute():
        manifest.schema_dir = str(path.parent / manifest.schema_dir)
    return manifest
