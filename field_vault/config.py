"""Environment-driven configuration and wiring."""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from .audit import AuditSink, FanOutAuditSink, LoggingAuditSink, NullAuditSink, SIEMAuditSink, SIEMConfig
from .boundary import MessageBoundary
from .errors import ConfigError
from .keystore import FileKeyStore, HttpKeyStore, KeyStore
from .policy import PolicyStore


logger = logging.getLogger(__name__)

DEFAULT_HOME = os.path.expanduser("~/.field_vault")
AUDIT_MODES = ("log", "siem", "both", "off")


@dataclass
class FieldVaultConfig:
    """Configuration for a message boundary.

    Attributes:
        policy: Policy file path or http(s) URL
        key_dir: Directory for the file key store
        key_url: Key service URL; takes precedence over key_dir
        refresh_interval: Seconds between policy reloads (0 disables)
        timeout: Default per-call timeout in seconds (0 means none)
        audit: One of 'log', 'siem', 'both', 'off'
        log_level: Logging level name
        identity: Caller id recorded on outbound audit events
    """
    policy: str = os.path.join(DEFAULT_HOME, "policy.json")
    key_dir: str = os.path.join(DEFAULT_HOME, "keys")
    key_url: str = ""
    refresh_interval: float = 0.0
    timeout: float = 0.0
    audit: str = "log"
    log_level: str = "INFO"
    identity: str = ""
    siem: Optional[SIEMConfig] = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> "FieldVaultConfig":
        """Create config from FIELD_VAULT_* environment variables."""
        try:
            config = cls(
                policy=os.environ.get("FIELD_VAULT_POLICY", os.path.join(DEFAULT_HOME, "policy.json")),
                key_dir=os.environ.get("FIELD_VAULT_KEY_DIR", os.path.join(DEFAULT_HOME, "keys")),
                key_url=os.environ.get("FIELD_VAULT_KEY_URL", ""),
                refresh_interval=float(os.environ.get("FIELD_VAULT_REFRESH_INTERVAL", "0")),
                timeout=float(os.environ.get("FIELD_VAULT_TIMEOUT", "0")),
                audit=os.environ.get("FIELD_VAULT_AUDIT", "log").lower(),
                log_level=os.environ.get("FIELD_VAULT_LOG_LEVEL", "INFO").upper(),
                identity=os.environ.get("FIELD_VAULT_IDENTITY", ""),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid numeric setting in environment: {e}", cause=e) from e
        config.validate()
        return config

    def validate(self) -> None:
        if self.audit not in AUDIT_MODES:
            raise ConfigError(f"FIELD_VAULT_AUDIT must be one of {', '.join(AUDIT_MODES)}, got {self.audit!r}")
        if self.refresh_interval < 0 or self.timeout < 0:
            raise ConfigError("Refresh interval and timeout must not be negative")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_key_store(config: FieldVaultConfig) -> KeyStore:
    if config.key_url:
        return HttpKeyStore(config.key_url, timeout=config.timeout or 5.0)
    return FileKeyStore(config.key_dir)


def build_audit_sink(config: FieldVaultConfig) -> AuditSink:
    if config.audit == "off":
        return NullAuditSink()
    if config.audit == "log":
        return LoggingAuditSink()
    siem = SIEMAuditSink(config.siem or SIEMConfig.from_env())
    if config.audit == "siem":
        return siem
    return FanOutAuditSink(LoggingAuditSink(), siem)


def build_boundary(config: Optional[FieldVaultConfig] = None) -> MessageBoundary:
    """Wire a policy store, key store and audit sink into a MessageBoundary.

    Loading the policy here is fatal on error; later scheduled reloads keep
    the last good snapshot.
    """
    config = config or FieldVaultConfig.from_env()
    config.validate()
    store = PolicyStore(config.policy)
    if config.refresh_interval:
        store.start_auto_reload(config.refresh_interval)
    boundary = MessageBoundary(
        store,
        build_key_store(config),
        audit_sink=build_audit_sink(config),
        default_timeout=config.timeout or None,
        identity=config.identity or None,
    )
    logger.info(f"Field Vault boundary ready (policy={config.policy}, audit={config.audit})")
    return boundary
