"""Configuration loading for merchstore.

Settings come from an optional JSON file (path given explicitly or through the
MERCHSTORE_CONFIG environment variable) and a handful of environment variables
for secrets. Everything is validated by pydantic at load time; variant-shaped
sections (promo rules, payment gateways) are discriminated by their ``kind``.
"""

import json
import os
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigError

# Can be overridden via MERCHSTORE_DATA_DIR environment variable
_default_data_dir = Path(__file__).parent.parent.parent / "data"
DATA_DIR = Path(os.environ.get("MERCHSTORE_DATA_DIR", _default_data_dir))
CONFIG_ENV_VAR = "MERCHSTORE_CONFIG"


# --- Pricing ---


class ShippingMethodConfig(BaseModel):
    id: str = Field(..., min_length=1)
    name: str
    cost: Decimal = Field(..., ge=0)
    estimate: str = ""
    estimated_days: int = Field(default=7, ge=0)


class _PromoRuleBase(BaseModel):
    description: str = ""
    min_subtotal: Decimal = Field(default=Decimal("0"), ge=0)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires = self.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return now >= expires


class PercentOffPromo(_PromoRuleBase):
    """Percentage off the subtotal."""

    kind: Literal["percent"] = "percent"
    percent: Decimal = Field(..., gt=0, le=100)


class FixedAmountPromo(_PromoRuleBase):
    """Fixed amount off the order."""

    kind: Literal["fixed"] = "fixed"
    amount: Decimal = Field(..., gt=0)


class FreeShippingPromo(_PromoRuleBase):
    """Waives the shipping cost."""

    kind: Literal["free_shipping"] = "free_shipping"


PromoRule = Annotated[
    Union[PercentOffPromo, FixedAmountPromo, FreeShippingPromo],
    Field(discriminator="kind"),
]


def _default_shipping_methods() -> list[ShippingMethodConfig]:
    return [
        ShippingMethodConfig(
            id="standard", name="Standard", cost=Decimal("5.00"),
            estimate="5-7 business days", estimated_days=7,
        ),
        ShippingMethodConfig(
            id="express", name="Express", cost=Decimal("12.99"),
            estimate="2-3 business days", estimated_days=3,
        ),
        ShippingMethodConfig(
            id="overnight", name="Overnight", cost=Decimal("24.99"),
            estimate="Next business day", estimated_days=1,
        ),
    ]


def _default_promo_codes() -> dict[str, Any]:
    return {
        "WELCOME10": PercentOffPromo(
            percent=Decimal("10"), min_subtotal=Decimal("25"),
            description="10% off your first order",
        ),
        "SAVE5": FixedAmountPromo(
            amount=Decimal("5"), min_subtotal=Decimal("30"),
            description="$5 off your order",
        ),
        "FREESHIP": FreeShippingPromo(description="Free shipping"),
        "TEST10": PercentOffPromo(percent=Decimal("10"), description="10% off"),
    }


class PricingConfig(BaseModel):
    """Pricing policy: flat tax rate, free-shipping threshold, methods and promos."""

    tax_rate: Decimal = Field(default=Decimal("0.08"), ge=0, lt=1)
    free_shipping_threshold: Optional[Decimal] = Field(default=Decimal("50.00"), ge=0)
    shipping_methods: list[ShippingMethodConfig] = Field(default_factory=_default_shipping_methods)
    promo_codes: dict[str, PromoRule] = Field(default_factory=_default_promo_codes)

    @field_validator("promo_codes")
    @classmethod
    def _normalize_codes(cls, value: dict[str, Any]) -> dict[str, Any]:
        return {code.strip().upper(): rule for code, rule in value.items()}

    @model_validator(mode="after")
    def _check_methods(self) -> "PricingConfig":
        if not self.shipping_methods:
            raise ValueError("at least one shipping method is required")
        ids = [m.id for m in self.shipping_methods]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate shipping method ids: {', '.join(duplicates)}")
        return self


# --- Payments ---


class SandboxGatewayConfig(BaseModel):
    """In-process gateway with deterministic test tokens."""

    kind: Literal["sandbox"] = "sandbox"
    publishable_key: str = "pk_test_sandbox"
    webhook_secret: str = "whsec_sandbox"


class StripeGatewayConfig(BaseModel):
    """Stripe PaymentIntents gateway."""

    kind: Literal["stripe"] = "stripe"
    secret_key: str = Field(..., min_length=1)
    publishable_key: str = ""
    webhook_secret: Optional[str] = None
    return_url: Optional[str] = None


PaymentsConfig = Annotated[
    Union[SandboxGatewayConfig, StripeGatewayConfig],
    Field(discriminator="kind"),
]


# --- Settings ---


class Settings(BaseModel):
    data_dir: Path = DATA_DIR
    currency: str = Field(default="USD", min_length=3, max_length=3)
    admin_token: Optional[str] = None
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    payments: PaymentsConfig = Field(default_factory=SandboxGatewayConfig)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


def _apply_env(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Fill settings that are usually supplied through the environment."""
    if "data_dir" not in data and env.get("MERCHSTORE_DATA_DIR"):
        data["data_dir"] = env["MERCHSTORE_DATA_DIR"]
    if "admin_token" not in data and env.get("MERCHSTORE_ADMIN_TOKEN"):
        data["admin_token"] = env["MERCHSTORE_ADMIN_TOKEN"]

    payments = data.get("payments")
    if isinstance(payments, dict) and payments.get("kind") == "stripe":
        if not payments.get("secret_key") and env.get("STRIPE_SECRET_KEY"):
            payments["secret_key"] = env["STRIPE_SECRET_KEY"]
        if not payments.get("webhook_secret") and env.get("STRIPE_WEBHOOK_SECRET"):
            payments["webhook_secret"] = env["STRIPE_WEBHOOK_SECRET"]
    return data


def load_settings(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """
    Load and validate settings.

    Args:
        path: JSON config file. Defaults to $MERCHSTORE_CONFIG, if set.
        env: Environment mapping (defaults to os.environ).

    Raises:
        ConfigError: If the file can't be read or any section fails validation.
    """
    env = os.environ if env is None else env
    if path is None and env.get(CONFIG_ENV_VAR):
        path = env[CONFIG_ENV_VAR]

    data: dict[str, Any] = {}
    source = "defaults"
    if path is not None:
        source = str(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise ConfigError(source, [f"cannot read file ({e.strerror or e})"])
        except json.JSONDecodeError as e:
            raise ConfigError(source, [f"invalid JSON at line {e.lineno}: {e.msg}"])
        if not isinstance(data, dict):
            raise ConfigError(source, ["top-level value must be an object"])

    data = _apply_env(data, env)

    try:
        return Settings.model_validate(data)
    except PydanticValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigError(source, problems)
