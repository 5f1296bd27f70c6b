"""
Broker factory.

Builds a configured broker adapter from a broker type and credentials.
Credentials can be passed decrypted, decrypted through an injected
credential provider, or read from ``config/broker_config.yaml`` with
``${ENV_VAR}`` placeholders and environment fallbacks.

Classes:
    AuthFlow: How a broker logs in
    BrokerRequirements: Fields a broker needs to log in
    CredentialCheck: Result of credential validation
    BrokerFactory: Factory for creating broker instances

Example:
    >>> from stockbasket.execution.broker_factory import BrokerFactory
    >>>
    >>> factory = BrokerFactory()
    >>> broker = factory.create("zerodha", {"api_key": "...", "api_secret": "..."})
    >>>
    >>> # Encrypted at rest
    >>> factory = BrokerFactory(credential_provider=FernetCredentialProvider(key))
    >>> broker = factory.create_from_encrypted("angelone", encrypted_fields)
    >>>
    >>> # From configuration file
    >>> broker = factory.from_config()
"""

import os
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

from stockbasket.execution.angel_broker import AngelOneBroker
from stockbasket.execution.broker_interface import BrokerCredentials, BrokerInterface, BrokerType
from stockbasket.execution.exceptions import ValidationError
from stockbasket.execution.kite_broker import KiteBroker
from stockbasket.utils.helpers import expand_env, load_config
from stockbasket.utils.logging_config import get_logger
from stockbasket.utils.settings import DEFAULT_CONFIG_PATH, TradingSettings, load_settings

if TYPE_CHECKING:
    from stockbasket.utils.credentials import CredentialProvider

logger = get_logger(__name__)

CredentialsInput = Union[BrokerCredentials, Mapping[str, Optional[str]]]

# Environment variables consulted when a config value is missing
ENV_FALLBACKS: Dict[BrokerType, Dict[str, str]] = {
    BrokerType.ZERODHA: {
        "api_key": "KITE_API_KEY",
        "api_secret": "KITE_API_SECRET",
        "access_token": "KITE_ACCESS_TOKEN",
    },
    BrokerType.ANGELONE: {
        "api_key": "ANGEL_API_KEY",
        "api_secret": "ANGEL_API_SECRET",
        "access_token": "ANGEL_ACCESS_TOKEN",
        "client_code": "ANGEL_CLIENT_CODE",
        "mpin": "ANGEL_MPIN",
        "totp_secret": "ANGEL_TOTP_SECRET",
    },
}

BROKER_INFO: Dict[BrokerType, Dict[str, Any]] = {
    BrokerType.ZERODHA: {
        "name": "Zerodha Kite",
        "description": "India's largest retail stockbroker",
        "doc_url": "https://developers.kite.trade",
        "features": ["Market Orders", "Limit Orders", "Holdings", "Positions", "Live Quotes"],
    },
    BrokerType.ANGELONE: {
        "name": "Angel One",
        "description": "Full-service broker with Smart API",
        "doc_url": "https://smartapi.angelbroking.com/docs",
        "features": ["Market Orders", "Limit Orders", "Holdings", "Positions", "Live Quotes"],
    },
}


class AuthFlow(Enum):
    """Login flow of a broker."""

    REDIRECT = "REDIRECT"  # browser login, request token returned via redirect
    CHALLENGE = "CHALLENGE"  # client code + MPIN + TOTP posted directly


@dataclass
class BrokerRequirements:
    """Credential fields a broker needs beyond the API key."""

    auth_flow: AuthFlow
    requires_oauth: bool
    requires_totp: bool
    requires_client_code: bool
    requires_mpin: bool
    additional_fields: List[str] = field(default_factory=list)


@dataclass
class CredentialCheck:
    """Outcome of credential validation."""

    valid: bool
    errors: List[str] = field(default_factory=list)


REQUIREMENTS: Dict[BrokerType, BrokerRequirements] = {
    BrokerType.ZERODHA: BrokerRequirements(
        auth_flow=AuthFlow.REDIRECT,
        requires_oauth=True,
        requires_totp=False,
        requires_client_code=False,
        requires_mpin=False,
    ),
    BrokerType.ANGELONE: BrokerRequirements(
        auth_flow=AuthFlow.CHALLENGE,
        requires_oauth=False,
        requires_totp=True,
        requires_client_code=True,
        requires_mpin=True,
        additional_fields=["client_code", "mpin", "totp"],
    ),
}

_CREDENTIAL_FIELDS = {f.name for f in fields(BrokerCredentials)}


def _coerce_credentials(credentials: CredentialsInput) -> BrokerCredentials:
    if isinstance(credentials, BrokerCredentials):
        return credentials

    unknown = set(credentials) - _CREDENTIAL_FIELDS
    if unknown:
        raise ValidationError(f"Unknown credential fields: {', '.join(sorted(unknown))}")

    return BrokerCredentials(**{k: v for k, v in credentials.items() if v})


class BrokerFactory:
    """
    Factory for creating broker instances.

    Attributes:
        credential_provider: Decrypts credentials stored encrypted (optional)
        settings: Trading settings handed to every adapter
    """

    def __init__(
        self,
        credential_provider: Optional["CredentialProvider"] = None,
        settings: Optional[TradingSettings] = None,
    ):
        self.credential_provider = credential_provider
        self.settings = settings or TradingSettings()

    def create(
        self,
        broker_type: Union[BrokerType, str],
        credentials: CredentialsInput,
        settings: Optional[TradingSettings] = None,
    ) -> BrokerInterface:
        """
        Create a broker adapter.

        An access token from an earlier login stands in for the login-only
        fields (MPIN, one-time code).

        Args:
            broker_type: 'zerodha' or 'angelone' (case-insensitive)
            credentials: Decrypted credentials
            settings: Overrides the factory settings for this adapter

        Returns:
            BrokerInterface implementation

        Raises:
            ValidationError: Unknown broker type or missing credentials
        """
        broker = BrokerType.parse(broker_type)
        creds = _coerce_credentials(credentials)

        check = self.validate_credentials(broker, creds)
        if not check.valid:
            raise ValidationError(
                f"Invalid {broker.value} credentials: {'; '.join(check.errors)}",
                broker=broker.value,
            )

        settings = settings or self.settings
        logger.info(f"Creating broker: {broker.value}")

        if broker == BrokerType.ZERODHA:
            return KiteBroker(
                api_key=creds.api_key,
                api_secret=creds.api_secret,
                access_token=creds.access_token,
                settings=settings,
            )

        return AngelOneBroker(
            api_key=creds.api_key,
            api_secret=creds.api_secret,
            client_code=creds.client_code,
            access_token=creds.access_token,
            mpin=creds.mpin,
            totp=creds.totp,
            totp_secret=creds.totp_secret,
            settings=settings,
        )

    def create_from_encrypted(
        self,
        broker_type: Union[BrokerType, str],
        encrypted_fields: Mapping[str, Optional[str]],
    ) -> BrokerInterface:
        """
        Create a broker adapter from encrypted credential fields.

        Args:
            broker_type: 'zerodha' or 'angelone'
            encrypted_fields: Credential field name -> ciphertext

        Returns:
            BrokerInterface implementation

        Raises:
            ValidationError: No credential provider, undecryptable or missing fields
        """
        if self.credential_provider is None:
            raise ValidationError("No credential provider configured for encrypted credentials")

        decrypted = self.credential_provider.decrypt_fields(encrypted_fields)
        return self.create(broker_type, decrypted)

    def from_config(
        self,
        config_path: Optional[Union[str, Path]] = None,
        broker_type: Optional[Union[BrokerType, str]] = None,
        overrides: Optional[Mapping[str, Optional[str]]] = None,
    ) -> BrokerInterface:
        """
        Create broker from configuration file.

        Values written as ``${VAR}`` are read from the environment; missing
        values fall back to KITE_* / ANGEL_* environment variables.

        Args:
            config_path: Path to broker configuration
                        (default: config/broker_config.yaml)
            broker_type: Broker to build (default: active_broker from config)
            overrides: Credential values taking precedence over the file

        Returns:
            Configured broker instance
        """
        config_path = config_path or DEFAULT_CONFIG_PATH
        config = load_config(config_path)

        broker = BrokerType.parse(broker_type or config.get("active_broker", "zerodha"))
        section = (config.get("brokers") or {}).get(broker.value) or {}

        credentials: Dict[str, Optional[str]] = {}
        for name in _CREDENTIAL_FIELDS:
            value = section.get(name)
            value = expand_env(str(value)) if value is not None else None
            if not value and name in ENV_FALLBACKS[broker]:
                value = os.getenv(ENV_FALLBACKS[broker][name])
            if value:
                credentials[name] = value

        credentials.update({k: v for k, v in (overrides or {}).items() if v})

        logger.info(f"Creating broker from config: {broker.value}")
        return self.create(broker, credentials, settings=load_settings(config_path))

    @staticmethod
    def validate_credentials(
        broker_type: Union[BrokerType, str],
        credentials: CredentialsInput,
    ) -> CredentialCheck:
        """
        Check that credentials carry every field the broker needs.

        Args:
            broker_type: 'zerodha' or 'angelone'
            credentials: Possibly partial credentials

        Returns:
            CredentialCheck with one message per missing field
        """
        try:
            broker = BrokerType.parse(broker_type)
            creds = _coerce_credentials(credentials)
        except ValidationError as e:
            return CredentialCheck(valid=False, errors=[str(e)])

        errors: List[str] = []
        if not creds.api_key:
            errors.append("API key is required")
        if not creds.api_secret:
            errors.append(f"API secret is required for {BROKER_INFO[broker]['name']}")

        if broker == BrokerType.ANGELONE:
            if not creds.client_code:
                errors.append("Client code is required for Angel One")
            if not creds.access_token:
                if not creds.mpin:
                    errors.append("MPIN is required for Angel One")
                if not creds.totp and not creds.totp_secret:
                    errors.append("TOTP or TOTP secret is required for Angel One")

        return CredentialCheck(valid=not errors, errors=errors)

    @staticmethod
    def get_requirements(broker_type: Union[BrokerType, str]) -> BrokerRequirements:
        """Login requirements of a broker."""
        return REQUIREMENTS[BrokerType.parse(broker_type)]

    @staticmethod
    def display_name(broker_type: Union[BrokerType, str]) -> str:
        """Human readable broker name ("Zerodha Kite", "Angel One")."""
        return BROKER_INFO[BrokerType.parse(broker_type)]["name"]

    @staticmethod
    def list_available_brokers() -> Dict[str, Dict[str, Any]]:
        """
        List all available brokers.

        Returns:
            Broker type -> name, description, docs, features and auth flow
        """
        return {
            broker.value: {
                **info,
                "auth_flow": REQUIREMENTS[broker].auth_flow.value,
            }
            for broker, info in BROKER_INFO.items()
        }
