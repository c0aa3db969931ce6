"""
Bridge configuration, logging setup and application-service registration.

The config file is JSON in the same shape other puppet bridges use (camelCase
keys, a list of identity pairs). Each identity pair gets a frozen PairConfig
with every default resolved up front; nothing downstream mutates config state.
"""
import json
import logging
import os
import secrets
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from src.core.address import AddressMapper
from src.core.dedup_tag import DEFAULT_DEDUPLICATION_TAG, DEFAULT_DEDUPLICATION_TAG_PATTERN, pattern_for_tag

DEFAULT_STATUS_ROOM_POSTFIX = "puppetStatusRoom"
DEFAULT_DATABASE_URL = "sqlite:///./data/puppet_bridge.db"
# Attachment size limit (50MB)
DEFAULT_MAX_ATTACHMENT_SIZE = 50 * 1024 * 1024


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


@dataclass(frozen=True)
class PuppetIdentity:
    localpart: str
    password: Optional[str] = None
    token: Optional[str] = None


@dataclass(frozen=True)
class IdentityPair:
    # Short string distinguishing this pair from others on the homeserver, used in aliases and ghost IDs
    id: str
    matrix_puppet: PuppetIdentity
    third_party: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentityPair":
        puppet = data.get("matrixPuppet") or {}
        if not data.get("id"):
            raise ConfigurationError("identity pair is missing 'id'")
        if not puppet.get("localpart"):
            raise ConfigurationError(f"identity pair '{data['id']}' is missing matrixPuppet.localpart")
        return cls(
            id=data["id"],
            matrix_puppet=PuppetIdentity(
                localpart=puppet["localpart"],
                password=puppet.get("password"),
                token=puppet.get("token"),
            ),
            third_party=dict(data.get("thirdParty") or {}),
        )


@dataclass(frozen=True)
class PairConfig:
    """Settings for one identity pair with all defaults resolved"""
    identity_pair_id: str
    service_name: str
    service_prefix: str
    homeserver_domain: str
    homeserver_url: str
    status_room_postfix: str = DEFAULT_STATUS_ROOM_POSTFIX
    deduplication_tag: str = DEFAULT_DEDUPLICATION_TAG
    deduplication_tag_pattern: str = DEFAULT_DEDUPLICATION_TAG_PATTERN
    allow_null_sender_name: bool = False
    request_timeout: float = 30.0
    adapter_timeout: float = 60.0
    relay_retries: int = 2
    relay_retry_delay: float = 1.0
    max_attachment_size: int = DEFAULT_MAX_ATTACHMENT_SIZE

    def address_mapper(self) -> AddressMapper:
        return AddressMapper(self.service_prefix, self.homeserver_domain, self.status_room_postfix)


@dataclass
class BridgeConfig:
    service_name: str
    service_prefix: str
    homeserver_domain: str
    homeserver_url: str
    identity_pairs: List[IdentityPair] = field(default_factory=list)
    port: int = 8090
    registration_path: str = "registration.yaml"
    deduplication_tag: Optional[str] = None
    deduplication_tag_pattern: Optional[str] = None
    status_room_postfix: Optional[str] = None
    allow_null_sender_name: bool = False
    request_timeout: float = 30.0
    adapter_timeout: float = 60.0
    relay_retries: int = 2
    relay_retry_delay: float = 1.0
    max_attachment_size: int = DEFAULT_MAX_ATTACHMENT_SIZE
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BridgeConfig":
        """Build a config from the camelCase JSON structure"""
        missing = [k for k in ("serviceName", "servicePrefix", "homeserverDomain", "homeserverUrl") if not data.get(k)]
        if missing:
            raise ConfigurationError(f"Missing required configuration keys: {', '.join(missing)}")
        try:
            optional = {
                "port": ("port", int),
                "registrationPath": ("registration_path", str),
                "deduplicationTag": ("deduplication_tag", str),
                "deduplicationTagPattern": ("deduplication_tag_pattern", str),
                "statusRoomPostfix": ("status_room_postfix", str),
                "allowNullSenderName": ("allow_null_sender_name", bool),
                "requestTimeout": ("request_timeout", float),
                "adapterTimeout": ("adapter_timeout", float),
                "relayRetries": ("relay_retries", int),
                "relayRetryDelay": ("relay_retry_delay", float),
                "maxAttachmentSize": ("max_attachment_size", int),
                "databaseUrl": ("database_url", str),
                "logLevel": ("log_level", str),
            }
            kwargs = {attr: convert(data[key]) for key, (attr, convert) in optional.items() if data.get(key) is not None}
            return cls(
                service_name=data["serviceName"],
                service_prefix=data["servicePrefix"],
                homeserver_domain=data["homeserverDomain"],
                homeserver_url=data["homeserverUrl"],
                identity_pairs=[IdentityPair.from_dict(p) for p in data.get("identityPairs") or []],
                **kwargs
            )
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    @classmethod
    def from_file(cls, path: str) -> "BridgeConfig":
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Failed to read configuration file {path}: {e}")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        """Load the config file named by BRIDGE_CONFIG (after reading .env)"""
        load_dotenv(".env")
        return cls.from_file(os.getenv("BRIDGE_CONFIG", "config.json"))

    def find_identity_pair(self, identity_pair_id: str) -> Optional[IdentityPair]:
        return next((p for p in self.identity_pairs if p.id == identity_pair_id), None)

    def pair_prefix(self, pair: IdentityPair) -> str:
        return f"{self.service_prefix}_{pair.id}"

    def for_pair(self, pair: IdentityPair) -> PairConfig:
        return PairConfig(
            identity_pair_id=pair.id,
            service_name=self.service_name,
            service_prefix=self.pair_prefix(pair),
            homeserver_domain=self.homeserver_domain,
            homeserver_url=self.homeserver_url,
            status_room_postfix=self.status_room_postfix or DEFAULT_STATUS_ROOM_POSTFIX,
            deduplication_tag=self.deduplication_tag or DEFAULT_DEDUPLICATION_TAG,
            deduplication_tag_pattern=pattern_for_tag(self.deduplication_tag, self.deduplication_tag_pattern),
            allow_null_sender_name=self.allow_null_sender_name,
            request_timeout=self.request_timeout,
            adapter_timeout=self.adapter_timeout,
            relay_retries=self.relay_retries,
            relay_retry_delay=self.relay_retry_delay,
            max_attachment_size=self.max_attachment_size,
        )

    def puppet_user_id(self, pair: IdentityPair) -> str:
        return f"@{pair.matrix_puppet.localpart}:{self.homeserver_domain}"

    @property
    def bot_localpart(self) -> str:
        return f"{self.service_prefix}bot"

    @property
    def bot_user_id(self) -> str:
        return f"@{self.bot_localpart}:{self.homeserver_domain}"


# ----------------------------------------------------------------------
# Application-service registration
# ----------------------------------------------------------------------

@dataclass
class Registration:
    id: str
    hs_token: str
    as_token: str
    url: str
    sender_localpart: str
    namespaces: Dict[str, List[Dict[str, Any]]]
    rate_limited: bool = False


def build_registration(config: BridgeConfig, url: str) -> Registration:
    return Registration(
        id=secrets.token_hex(16),
        hs_token=secrets.token_hex(32),
        as_token=secrets.token_hex(32),
        url=url,
        sender_localpart=config.bot_localpart,
        namespaces={
            "users": [{"exclusive": True, "regex": f"@{config.service_prefix}_.*"}],
            "aliases": [{"exclusive": True, "regex": f"#{config.service_prefix}_.*"}],
            "rooms": [],
        },
    )


def generate_registration(config: BridgeConfig, url: str, path: Optional[str] = None) -> Registration:
    """Write a fresh registration file for the homeserver and return it"""
    registration = build_registration(config, url)
    target = Path(path or config.registration_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(yaml.safe_dump(asdict(registration), default_flow_style=False, sort_keys=False), encoding="utf-8")
    logging.getLogger("puppet_bridge.config").info(f"Wrote application service registration to {target}")
    return registration


def load_registration(path: str) -> Registration:
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read registration file {path}: {e}")
    try:
        return Registration(
            id=raw["id"],
            hs_token=raw["hs_token"],
            as_token=raw["as_token"],
            url=raw.get("url", ""),
            sender_localpart=raw["sender_localpart"],
            namespaces=raw.get("namespaces") or {},
            rate_limited=bool(raw.get("rate_limited", False)),
        )
    except KeyError as e:
        raise ConfigurationError(f"Registration file {path} is missing {e}")


# ----------------------------------------------------------------------
# Token association
# ----------------------------------------------------------------------

def associate_token(config_path: str, identity_pair_id: str, token: str) -> None:
    """Store an access token for a pair's puppet in the config file, dropping its password"""
    path = Path(config_path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Failed to read configuration file {config_path}: {e}")

    found = False
    for pair in data.get("identityPairs") or []:
        if pair.get("id") == identity_pair_id:
            pair["matrixPuppet"] = {
                "localpart": (pair.get("matrixPuppet") or {}).get("localpart"),
                "token": token,
            }
            found = True
    if not found:
        raise ConfigurationError(f"No identity pair with id '{identity_pair_id}' in {config_path}")

    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    logging.getLogger("puppet_bridge.config").info(f"Updated config file {config_path}")


# ----------------------------------------------------------------------
# Logging
# ----------------------------------------------------------------------

class JSONFormatter(logging.Formatter):
    _RESERVED = {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "getMessage", "taskName", "message",
    }

    def format(self, record):
        log_entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in self._RESERVED:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Setup structured JSON logging for the bridge"""
    logger = logging.getLogger("puppet_bridge")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)

    return logger
