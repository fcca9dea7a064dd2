"""YAML configuration file loading."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".podwatch"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_DB_PATH = str(DEFAULT_CONFIG_DIR / "podwatch.db")

# Aggregators that merge gossip from many pods.
DEFAULT_PROXY_ENDPOINTS = [
    "https://rpc1.pchednode.com/rpc",
    "https://rpc2.pchednode.com/rpc",
    "https://rpc3.pchednode.com/rpc",
    "https://rpc4.pchednode.com/rpc",
]

# Pods known to expose their control RPC publicly.
DEFAULT_SEED_ENDPOINTS = [
    "173.212.203.145:6000",
    "173.212.220.65:6000",
    "161.97.97.41:6000",
    "192.190.136.36:6000",
    "192.190.136.37:6000",
    "192.190.136.38:6000",
    "192.190.136.28:6000",
    "192.190.136.29:6000",
    "207.244.255.1:6000",
    "173.249.59.66:6000",
    "173.249.54.191:6000",
]

DEFAULT_ENRICHERS = ["latency", "stats", "geoip", "onchain"]


@dataclass
class PodwatchConfig:
    """Top-level configuration for podwatch.

    Every field has a default so a refresh cycle works out of the box
    against the public devnet seeds.

    Attributes:
        db_path: Path to the SQLite database file.
        proxy_endpoints: Aggregator RPC URLs queried in the seed round.
        seed_endpoints: Direct ``ip:port`` pods queried in the seed round.
        round_cap: Maximum number of peer-of-peer rounds after the seed round.
        batch_size: Concurrent calls per batch in every phase.
        control_port: Default pod control RPC port.
        data_port: Default pod data port, tried after the control port.
        discovery_timeout: Seconds allowed for ``get-pods-with-stats``.
        basic_discovery_timeout: Seconds allowed for ``get-pods``.
        enrichment_timeout: Seconds allowed for each enrichment/probe call.
        region_endpoints: ``region -> base URL`` of batch latency workers.
        region_batch_timeout: Seconds allowed for one region batch.
        maxmind_city_db: Path to GeoLite2-City.mmdb, or None.
        maxmind_asn_db: Path to GeoLite2-ASN.mmdb, or None.
        solana_rpc_url: Solana JSON-RPC URL for balance lookups.
        credits_url: Pod credits API URL, or None to skip credits.
        geo_cache_ttl: Seconds a geo-IP answer stays cached.
        balance_cache_ttl: Seconds a balance/credits answer stays cached.
        cycle_timeout: Outer timeout in seconds for one full cycle.
        refresh_interval: Seconds between cycles in ``podwatch watch``.
        enrichers: Enricher names to run, in order.
    """

    db_path: str = DEFAULT_DB_PATH
    proxy_endpoints: list[str] = field(default_factory=lambda: list(DEFAULT_PROXY_ENDPOINTS))
    seed_endpoints: list[str] = field(default_factory=lambda: list(DEFAULT_SEED_ENDPOINTS))
    round_cap: int = 3
    batch_size: int = 20
    control_port: int = 6000
    data_port: int = 9000
    discovery_timeout: float = 30.0
    basic_discovery_timeout: float = 20.0
    enrichment_timeout: float = 2.0
    region_endpoints: dict[str, str] = field(default_factory=dict)
    region_batch_timeout: float = 10.0
    maxmind_city_db: str | None = None
    maxmind_asn_db: str | None = None
    solana_rpc_url: str = "https://api.devnet.xandeum.com:8899"
    credits_url: str | None = "https://podcredits.xandeum.network/api/pods-credits"
    geo_cache_ttl: float = 24 * 60 * 60
    balance_cache_ttl: float = 5 * 60
    cycle_timeout: float = 600.0
    refresh_interval: float = 60.0
    enrichers: list[str] = field(default_factory=lambda: list(DEFAULT_ENRICHERS))

    @property
    def ports(self) -> tuple[int, int]:
        return (self.control_port, self.data_port)


# Keys in the YAML file that map to PodwatchConfig fields.
_YAML_KEY_TO_FIELD: dict[str, str] = {
    "db_path": "db_path",
    "proxy_endpoints": "proxy_endpoints",
    "seed_endpoints": "seed_endpoints",
    "round_cap": "round_cap",
    "batch_size": "batch_size",
    "control_port": "control_port",
    "data_port": "data_port",
    "discovery_timeout": "discovery_timeout",
    "basic_discovery_timeout": "basic_discovery_timeout",
    "enrichment_timeout": "enrichment_timeout",
    "region_endpoints": "region_endpoints",
    "region_batch_timeout": "region_batch_timeout",
    "maxmind_city_db": "maxmind_city_db",
    "maxmind_asn_db": "maxmind_asn_db",
    "solana_rpc_url": "solana_rpc_url",
    "credits_url": "credits_url",
    "geo_cache_ttl": "geo_cache_ttl",
    "balance_cache_ttl": "balance_cache_ttl",
    "cycle_timeout": "cycle_timeout",
    "refresh_interval": "refresh_interval",
    "enrichers": "enrichers",
}

_LIST_FIELDS = ("proxy_endpoints", "seed_endpoints", "enrichers")
_POSITIVE_INT_FIELDS = ("round_cap", "batch_size")


def load_config(path: Path | str | None = None) -> PodwatchConfig:
    """Load configuration from a YAML file.

    Args:
        path: Explicit path to a YAML config file.  If ``None``, the
            default location (``~/.podwatch/config.yaml``) is tried.  If the
            default file doesn't exist, a ``PodwatchConfig`` with all
            defaults is returned silently.

    Returns:
        A populated ``PodwatchConfig`` instance.

    Raises:
        FileNotFoundError: If an explicit *path* was given but doesn't exist.
        ConfigError: If the file contains invalid YAML, has an unexpected
            top-level structure, or a value of the wrong shape.
    """
    resolved = _resolve_path(path)

    if resolved is None:
        logger.debug("No config file found; using defaults")
        return PodwatchConfig()

    logger.debug("Loading config from %s", resolved)
    text = resolved.read_text(encoding="utf-8")

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved}: {exc}") from exc

    if raw is None:
        # Empty file: all defaults.
        return PodwatchConfig()

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping at the top level in {resolved}, "
            f"got {type(raw).__name__}"
        )

    return _build_config(raw, source=resolved)


class ConfigError(Exception):
    """Raised when a configuration file is malformed or unreadable."""


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _resolve_path(path: Path | str | None) -> Path | None:
    """Return a concrete ``Path`` to read, or ``None`` if nothing to read.

    Raises:
        FileNotFoundError: If the caller supplied an explicit path that
            doesn't exist on disk.
    """
    if path is not None:
        p = Path(path).expanduser()
        if not p.is_file():
            raise FileNotFoundError(f"Config file not found: {p}")
        return p

    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.is_file():
        return default
    return None


def _build_config(raw: dict, source: Path) -> PodwatchConfig:
    """Map raw YAML dict to a ``PodwatchConfig``, ignoring unknown keys."""
    kwargs: dict[str, object] = {}

    for yaml_key, field_name in _YAML_KEY_TO_FIELD.items():
        if yaml_key in raw:
            kwargs[field_name] = raw[yaml_key]

    unknown = set(raw) - set(_YAML_KEY_TO_FIELD)
    if unknown:
        logger.warning(
            "Ignoring unknown config keys in %s: %s",
            source,
            ", ".join(sorted(unknown)),
        )

    _validate(kwargs, source)
    return PodwatchConfig(**kwargs)


def _validate(kwargs: dict[str, object], source: Path) -> None:
    """Reject values whose shape the rest of the tool can't use."""
    for name in _LIST_FIELDS:
        if name in kwargs and not isinstance(kwargs[name], list):
            raise ConfigError(f"{name} in {source} must be a list")

    if "region_endpoints" in kwargs and not isinstance(kwargs["region_endpoints"], dict):
        raise ConfigError(f"region_endpoints in {source} must be a mapping")

    for name in _POSITIVE_INT_FIELDS:
        if name in kwargs:
            value = kwargs[name]
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigError(f"{name} in {source} must be a positive integer")
