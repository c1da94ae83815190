"""
Configuration module for lotseal.

Settings are read from environment variables once, at startup, into plain
config structs. Adapters receive their config through their constructors;
nothing in the package keeps a module-level client.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .errors import ConfigurationError
from .ledger import SCROLL_SEPOLIA_CHAIN_ID, InMemoryLedger, LedgerAdapter, SignedRelayLedger
from .orchestrator import DEFAULT_SETTLED_HISTORY, CertificationOrchestrator
from .signing import AwsKmsTransactionSigner, FileTransactionSigner, TransactionSigner
from .store import InMemoryRecordStore, RecordStore, RestRecordStore, SqliteRecordStore
from .util import mask_sensitive
from .validator import ValidationRules, Validator

logger = logging.getLogger(__name__)

_TRUTHY = ("1", "true", "yes")


def _markers(raw: Optional[str], default):
    if raw is None or not raw.strip():
        return default
    return tuple(m.strip() for m in raw.split(",") if m.strip())


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "sqlite"                      # memory|sqlite|rest
    sqlite_path: str = "data/lotseal.db"
    rest_url: str = ""
    rest_key: str = ""
    rest_table: str = "lotes"
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class LedgerConfig:
    backend: str = "memory"                      # memory|relay
    relay_url: str = ""
    contract_address: str = ""
    chain_id: int = SCROLL_SEPOLIA_CHAIN_ID
    explorer_url: str = "https://sepolia.scrollscan.com"
    timeout_seconds: float = 10.0
    signer: str = "file"                         # file|aws_kms
    signer_key_path: str = "secrets/lotseal_signer_key.json"
    kms_key_id: str = ""
    kms_region: str = ""
    kms_kid: str = "aws-kms-ed25519"


@dataclass(frozen=True)
class Settings:
    env: str = "dev"                             # dev|stage|prod
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = True
    store: StoreConfig = field(default_factory=StoreConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    validation: ValidationRules = field(default_factory=ValidationRules)
    settled_history: int = DEFAULT_SETTLED_HISTORY   # finished attempts kept for lookup

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = ValidationRules()

        store = StoreConfig(
            backend=env.get("LOTSEAL_STORE_BACKEND", "sqlite"),
            sqlite_path=env.get("LOTSEAL_SQLITE_PATH", "data/lotseal.db"),
            rest_url=env.get("SUPABASE_URL", ""),
            rest_key=env.get("SUPABASE_KEY", ""),
            rest_table=env.get("LOTSEAL_REST_TABLE", "lotes"),
            timeout_seconds=float(env.get("LOTSEAL_STORE_TIMEOUT", "10")),
        )
        ledger = LedgerConfig(
            backend=env.get("LOTSEAL_LEDGER_BACKEND", "memory"),
            relay_url=env.get("LOTSEAL_RELAY_URL", ""),
            contract_address=env.get("LOTSEAL_CONTRACT_ADDRESS", ""),
            chain_id=int(env.get("LOTSEAL_CHAIN_ID", str(SCROLL_SEPOLIA_CHAIN_ID))),
            explorer_url=env.get("LOTSEAL_EXPLORER_URL", "https://sepolia.scrollscan.com"),
            timeout_seconds=float(env.get("LOTSEAL_LEDGER_TIMEOUT", "10")),
            signer=env.get("LOTSEAL_SIGNER", "file"),
            signer_key_path=env.get("LOTSEAL_SIGNER_KEY_PATH", "secrets/lotseal_signer_key.json"),
            kms_key_id=env.get("AWS_KMS_KEY_ID", ""),
            kms_region=env.get("AWS_REGION", ""),
            kms_kid=env.get("AWS_KMS_KID", "aws-kms-ed25519"),
        )
        validation = ValidationRules(
            counterfeit_markers=_markers(env.get("LOTSEAL_COUNTERFEIT_MARKERS"), defaults.counterfeit_markers),
            expired_markers=_markers(env.get("LOTSEAL_EXPIRED_MARKERS"), defaults.expired_markers),
            suspicious_markers=_markers(env.get("LOTSEAL_SUSPICIOUS_MARKERS"), defaults.suspicious_markers),
        )
        return cls(
            env=env.get("LOTSEAL_ENV", "dev"),
            debug=env.get("LOTSEAL_DEBUG", "").lower() in _TRUTHY,
            log_level=env.get("LOTSEAL_LOG_LEVEL", "INFO"),
            log_json=env.get("LOTSEAL_LOG_JSON", "true").lower() in _TRUTHY,
            store=store,
            ledger=ledger,
            validation=validation,
            settled_history=int(env.get("LOTSEAL_SETTLED_HISTORY", str(DEFAULT_SETTLED_HISTORY))),
        )

    def is_production(self) -> bool:
        return self.env == "prod"


# ============================================================
# Factories
# ============================================================

def build_record_store(config: StoreConfig) -> RecordStore:
    if config.backend == "memory":
        return InMemoryRecordStore()
    if config.backend == "sqlite":
        return SqliteRecordStore(config.sqlite_path)
    if config.backend == "rest":
        if not config.rest_url or not config.rest_key:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_KEY required for rest store")
        logger.info("rest record store at %s (key %s)", config.rest_url, mask_sensitive(config.rest_key))
        return RestRecordStore(
            base_url=config.rest_url,
            api_key=config.rest_key,
            table=config.rest_table,
            timeout=config.timeout_seconds,
        )
    raise ConfigurationError("unknown store backend", config.backend)


def build_signer(config: LedgerConfig) -> TransactionSigner:
    if config.signer == "aws_kms":
        if not config.kms_key_id:
            raise ConfigurationError("AWS_KMS_KEY_ID required for aws_kms signer")
        return AwsKmsTransactionSigner(
            kms_key_id=config.kms_key_id,
            region=config.kms_region or None,
            kid=config.kms_kid,
        )
    if config.signer == "file":
        if not os.path.exists(config.signer_key_path):
            raise ConfigurationError("signer key file not found", config.signer_key_path)
        return FileTransactionSigner(config.signer_key_path)
    raise ConfigurationError("unknown signer", config.signer)


def build_ledger(config: LedgerConfig) -> LedgerAdapter:
    if config.backend == "memory":
        return InMemoryLedger()
    if config.backend == "relay":
        if not config.relay_url or not config.contract_address:
            raise ConfigurationError("LOTSEAL_RELAY_URL and LOTSEAL_CONTRACT_ADDRESS required for relay ledger")
        return SignedRelayLedger(
            signer=build_signer(config),
            relay_url=config.relay_url,
            contract_address=config.contract_address,
            chain_id=config.chain_id,
            explorer_url=config.explorer_url or None,
            timeout=config.timeout_seconds,
        )
    raise ConfigurationError("unknown ledger backend", config.backend)


def build_orchestrator(settings: Settings) -> CertificationOrchestrator:
    return CertificationOrchestrator(
        store=build_record_store(settings.store),
        ledger=build_ledger(settings.ledger),
        validator=Validator.from_config(settings.validation),
        settled_history=settings.settled_history,
    )
