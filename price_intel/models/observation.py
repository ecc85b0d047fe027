# price_intel/models/observation.py

"""Price observation model and per-entity-type context shapes."""

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from price_intel.errors import ValidationError

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


class EntityType(str, Enum):
    """Kinds of bookable entity whose prices are tracked."""

    HOTEL = "HOTEL"
    FLIGHT = "FLIGHT"
    TOUR = "TOUR"

    @classmethod
    def parse(cls, value: "EntityType | str") -> "EntityType":
        """Coerce a raw string to an EntityType or raise ValidationError."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(
                f"Unknown entity type: {value!r}", field="entity_type",
            ) from None


@dataclass(frozen=True)
class StayContext:
    """Hotel stay parameters the price was quoted for."""

    check_in: date | None = None
    check_out: date | None = None
    guests: int | None = None
    kind: str = field(default="stay", init=False)


@dataclass(frozen=True)
class RouteContext:
    """Flight route parameters the price was quoted for."""

    origin: str = ""
    destination: str = ""
    travel_date: date | None = None
    passengers: int | None = None
    kind: str = field(default="route", init=False)


@dataclass(frozen=True)
class TourContext:
    """Tour booking parameters the price was quoted for."""

    tour_date: date | None = None
    participants: int | None = None
    kind: str = field(default="tour", init=False)


ObservationContext = StayContext | RouteContext | TourContext

_CONTEXT_FOR_TYPE: dict[EntityType, type] = {
    EntityType.HOTEL: StayContext,
    EntityType.FLIGHT: RouteContext,
    EntityType.TOUR: TourContext,
}

_DATE_FIELDS = ("check_in", "check_out", "travel_date", "tour_date")


def context_to_dict(context: ObservationContext) -> dict[str, Any]:
    """Serialise a context to a JSON-friendly dict."""
    data = asdict(context)
    for key in _DATE_FIELDS:
        if isinstance(data.get(key), date):
            data[key] = data[key].isoformat()
    return data


def context_from_dict(
    entity_type: EntityType, data: dict[str, Any],
) -> ObservationContext:
    """Rebuild the context shape that belongs to *entity_type*."""
    cls = _CONTEXT_FOR_TYPE[entity_type]
    values = {k: v for k, v in data.items() if k != "kind"}
    for key in _DATE_FIELDS:
        if isinstance(values.get(key), str):
            values[key] = date.fromisoformat(values[key])
    try:
        context: ObservationContext = cls(**values)
    except TypeError as exc:
        raise ValidationError(
            f"Invalid {entity_type.value} context: {exc}",
            field="context",
        ) from exc
    return context


def to_utc(moment: datetime) -> datetime:
    """Normalise a timestamp to aware UTC; naive values are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def parse_price(value: Any, field_name: str = "price") -> Decimal:
    """Convert *value* to a non-negative Decimal or raise ValidationError."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field_name}: {value!r}", field_name)
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(
            f"Invalid {field_name}: {value!r}", field=field_name,
        ) from None
    if not price.is_finite():
        raise ValidationError(
            f"Invalid {field_name}: {value!r}", field=field_name,
        )
    if price < 0:
        raise ValidationError(
            f"{field_name} must be non-negative, got {price}",
            field=field_name,
        )
    return price


@dataclass
class PriceObservation:
    """A single price sample for an entity at a point in time."""

    entity_type: EntityType
    entity_id: str
    price: Decimal
    currency: str
    observed_at: datetime
    source: str = "unknown"
    context: ObservationContext | None = None

    def validated(self) -> "PriceObservation":
        """Return a normalised copy, raising ValidationError on bad input."""
        entity_type = EntityType.parse(self.entity_type)
        entity_id = str(self.entity_id or "").strip()
        if not entity_id:
            raise ValidationError(
                "entity_id is required", field="entity_id",
            )
        currency = str(self.currency or "").strip().upper()
        if not _CURRENCY_RE.match(currency):
            raise ValidationError(
                f"Invalid currency code: {self.currency!r}",
                field="currency",
            )
        if not isinstance(self.observed_at, datetime):
            raise ValidationError(
                "observed_at must be a datetime", field="observed_at",
            )
        context = self.context
        if context is not None and not isinstance(
            context, _CONTEXT_FOR_TYPE[entity_type]
        ):
            raise ValidationError(
                f"{type(context).__name__} does not describe a "
                f"{entity_type.value}",
                field="context",
            )
        return PriceObservation(
            entity_type=entity_type,
            entity_id=entity_id,
            price=parse_price(self.price),
            currency=currency,
            observed_at=to_utc(self.observed_at),
            source=str(self.source or "unknown").strip() or "unknown",
            context=context,
        )

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "PriceObservation":
        """Build an observation from a loosely-typed ingestion record."""
        try:
            entity_type = EntityType.parse(row["entity_type"])
            raw_ts = row["observed_at"]
            observed_at = (
                raw_ts
                if isinstance(raw_ts, datetime)
                else datetime.fromisoformat(str(raw_ts))
            )
            raw_context = row.get("context")
            context = (
                context_from_dict(entity_type, raw_context)
                if isinstance(raw_context, dict)
                else None
            )
            return cls(
                entity_type=entity_type,
                entity_id=str(row["entity_id"]),
                price=parse_price(row["price"]),
                currency=str(row.get("currency", "")),
                observed_at=observed_at,
                source=str(row.get("source", "unknown")),
                context=context,
            ).validated()
        except KeyError as exc:
            raise ValidationError(
                f"Missing required field: {exc.args[0]}",
                field=str(exc.args[0]),
            ) from None
        except ValueError as exc:
            if isinstance(exc, ValidationError):
                raise
            raise ValidationError(str(exc)) from exc
