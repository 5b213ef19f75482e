"""Subscription data model."""
import copy
import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Type, TypeVar, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class Frequency(str, Enum):
    """Billing cycle of a subscription."""

    MONTHLY = 'Monthly'
    QUARTERLY = 'Quarterly'
    SEMI_ANNUALLY = 'Semi-Annually'
    YEARLY = 'Yearly'

    @property
    def months(self) -> int:
        """Length of one cycle in months."""
        return _CYCLE_MONTHS[self]


_CYCLE_MONTHS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.SEMI_ANNUALLY: 6,
    Frequency.YEARLY: 12,
}


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a subscription."""

    ACTIVE = 'active'
    CANCELLED = 'cancelled'


def price_number(price: Optional[Decimal]) -> Union[int, float, None]:
    """Decimal price as a JSON number."""
    if price is None or not price.is_finite():
        return None
    return int(price) if price == price.to_integral_value() else float(price)


class RecordModel(BaseModel):
    """Base for persisted records: camelCase on disk, unknown keys kept."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra='allow',
        validate_assignment=True,
    )

    @model_validator(mode='before')
    @classmethod
    def drop_nulls(cls, data):
        """Stored nulls fall back to the field default."""
        if not isinstance(data, dict):
            return data
        defaulted = set()
        for name, field in cls.model_fields.items():
            if field.default is None and field.default_factory is None:
                continue
            defaulted.add(name)
            if field.alias:
                defaulted.add(field.alias)
        return {k: v for k, v in data.items() if v is not None or k not in defaulted}

    def to_record(self) -> dict:
        """Dump to the persisted JSON shape."""
        return self.model_dump(by_alias=True, exclude_none=True, mode='json')


class Subscription(RecordModel):
    """A tracked recurring subscription.

    Created and edited by the UI layer. The engine only touches
    ``status``, ``cancelled_at`` and ``next_billing_date``.
    """

    id: str = ''
    name: str = ''
    price: Optional[Decimal] = None
    currency: str = ''
    # Kept as the raw string so unknown values survive a round trip
    frequency: str = Frequency.MONTHLY.value
    start_date: Optional[str] = None
    next_billing_date: Optional[str] = None
    status: str = SubscriptionStatus.ACTIVE.value
    cancelled_at: Optional[str] = None
    notifications_enabled: bool = False
    payment_method: Optional[str] = None

    @field_validator('id', 'frequency', 'currency', mode='before')
    @classmethod
    def coerce_str(cls, v):
        """Older clients wrote numeric ids and nulls."""
        if v is None:
            return ''
        if isinstance(v, Enum):
            return v.value
        return str(v)

    @field_validator('price', mode='before')
    @classmethod
    def lenient_price(cls, v):
        """Unparseable prices are treated as unknown."""
        if v is None or v == '':
            return None
        try:
            return Decimal(str(v))
        except ArithmeticError:
            return None

    @field_validator('status', mode='before')
    @classmethod
    def default_status(cls, v):
        """Missing status means active."""
        if isinstance(v, SubscriptionStatus):
            return v.value
        return v or SubscriptionStatus.ACTIVE.value

    @field_serializer('price')
    def serialize_price(self, price: Optional[Decimal]):
        """Persist price as a JSON number like the UI does."""
        return price_number(price)

    @property
    def is_active(self) -> bool:
        """Check if subscription is active."""
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def cycle(self) -> Optional[Frequency]:
        """Parsed frequency, or None for an unknown value."""
        try:
            return Frequency(self.frequency)
        except ValueError:
            return None


ModelT = TypeVar('ModelT', bound=BaseModel)


def _drop_invalid(data: Any, locations) -> None:
    """Remove the values named by validation error locations."""
    list_drops: Dict[int, tuple] = {}
    for loc in locations:
        parent, key, node = None, None, data
        for part in loc:
            if isinstance(node, dict) and part in node:
                parent, key, node = node, part, node[part]
            elif isinstance(node, list) and isinstance(part, int) and 0 <= part < len(node):
                parent, key, node = node, part, node[part]
            else:
                break
        if isinstance(parent, dict):
            parent.pop(key, None)
        elif isinstance(parent, list):
            list_drops.setdefault(id(parent), (parent, set()))[1].add(key)

    for items, indexes in list_drops.values():
        for index in sorted(indexes, reverse=True):
            del items[index]


def validate_lenient(model: Type[ModelT], raw: Dict[str, Any]) -> Optional[ModelT]:
    """
    Validate a stored record, reverting invalid fields to their defaults.

    Args:
        model: Model class
        raw: Stored JSON object

    Returns:
        Model instance, or None when the record cannot be repaired
    """
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Repairing stored {model.__name__}: {e}")
        repaired = copy.deepcopy(raw)
        _drop_invalid(repaired, [error['loc'] for error in e.errors()])

    try:
        return model.model_validate(repaired)
    except ValidationError as e:
        logger.error(f"Dropping unreadable {model.__name__}: {e}")
        return None
