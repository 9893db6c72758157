"""Seat topology generation for bus configurations.

Seat ids must stay stable for a given ``(bus_type, total_seats)`` because bookings
reference them long after the layout was generated, so synthesis is a pure function
of its inputs and regeneration that changes the id set is refused unless forced.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from pydantic import ValidationError

from app.config import settings
from app.errors import InvalidConfiguration, LayoutChangeRefused
from app.schemas.seatmap import BusType, Deck, SeatDescriptor, SeatTopology, Side

logger = logging.getLogger(__name__)

# bus type -> (decks, seats per row)
LAYOUT_PROFILES: Dict[BusType, Tuple[Tuple[Deck, ...], int]] = {
    BusType.SEATER: ((Deck.LOWER,), 4),
    BusType.LUXURY: ((Deck.LOWER,), 3),
    BusType.SEMI_SLEEPER: ((Deck.LOWER, Deck.UPPER), 3),
    BusType.SLEEPER: ((Deck.LOWER, Deck.UPPER), 3),
}

DECK_PREFIX = {Deck.LOWER: "L", Deck.UPPER: "U"}

LayoutEntry = Union[SeatDescriptor, Mapping[str, Any]]


@dataclass(frozen=True)
class LayoutChange:
    topology: SeatTopology
    removed: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)


def parse_bus_type(bus_type: Union[str, BusType]) -> BusType:
    if isinstance(bus_type, BusType):
        return bus_type
    try:
        return BusType(str(bus_type).strip().lower().replace("_", "-"))
    except ValueError:
        raise InvalidConfiguration(f"Unknown bus type: {bus_type}")


def _deck_counts(decks: Sequence[Deck], total_seats: int) -> List[int]:
    if len(decks) == 1:
        return [total_seats]
    lower = math.ceil(total_seats / 2)
    return [lower, total_seats - lower]


def _synthesize(bus_type: BusType, total_seats: int) -> List[SeatDescriptor]:
    decks, per_row = LAYOUT_PROFILES[bus_type]
    left_columns = math.ceil(per_row / 2)
    seats = []
    for deck, count in zip(decks, _deck_counts(decks, total_seats)):
        prefix = DECK_PREFIX[deck]
        for index in range(count):
            column = index % per_row + 1
            seats.append(
                SeatDescriptor(
                    seat_id=f"{prefix}{index + 1}",
                    deck=deck,
                    side=Side.LEFT if column <= left_columns else Side.RIGHT,
                    row=index // per_row + 1,
                    column=column,
                )
            )
    return seats


def _is_contiguous(values: Set[int]) -> bool:
    return max(values) - min(values) + 1 == len(values)


def validate_layout(layout: Iterable[LayoutEntry], total_seats: int) -> List[SeatDescriptor]:
    """Parse an admin-authored layout and check it is structurally consistent."""
    seats = []
    for position, entry in enumerate(layout):
        if isinstance(entry, SeatDescriptor):
            seats.append(entry)
            continue
        try:
            seats.append(SeatDescriptor.model_validate(entry))
        except ValidationError as exc:
            raise InvalidConfiguration(f"Invalid seat at position {position}: {exc.errors()[0]['msg']}")

    if len(seats) != total_seats:
        raise InvalidConfiguration(f"Layout has {len(seats)} seats but bus declares {total_seats}")

    seen: Set[str] = set()
    duplicates = []
    for seat in seats:
        if seat.seat_id in seen:
            duplicates.append(seat.seat_id)
        seen.add(seat.seat_id)
    if duplicates:
        raise InvalidConfiguration("Duplicate seat ids: %s" % ", ".join(sorted(set(duplicates))))

    groups: Dict[Tuple[Deck, Side], List[SeatDescriptor]] = {}
    for seat in seats:
        groups.setdefault((seat.deck, seat.side), []).append(seat)
    for (deck, side), group in groups.items():
        if not _is_contiguous({s.row for s in group}):
            raise InvalidConfiguration(f"Rows on {deck.value} deck, {side.value} side are not contiguous")
        if not _is_contiguous({s.column for s in group}):
            raise InvalidConfiguration(f"Columns on {deck.value} deck, {side.value} side are not contiguous")
    return seats


def generate(
    bus_type: Union[str, BusType],
    total_seats: int,
    explicit_layout: Optional[Iterable[LayoutEntry]] = None,
) -> SeatTopology:
    """Build the seat topology for a bus.

    An explicit layout is validated and returned in the order given; otherwise the
    layout is synthesised from the bus type. Raises ``InvalidConfiguration``.
    """
    kind = parse_bus_type(bus_type)
    if total_seats <= 0:
        raise InvalidConfiguration("Bus must have at least 1 seat")
    if total_seats > settings.MAX_SEATS_PER_BUS:
        raise InvalidConfiguration(f"Bus cannot have more than {settings.MAX_SEATS_PER_BUS} seats")

    if explicit_layout is not None:
        seats = validate_layout(explicit_layout, total_seats)
        return SeatTopology(bus_type=kind, total_seats=total_seats, custom=True, seats=tuple(seats))
    return SeatTopology(bus_type=kind, total_seats=total_seats, seats=tuple(_synthesize(kind, total_seats)))


def regenerate(
    previous: Optional[SeatTopology],
    bus_type: Union[str, BusType],
    total_seats: int,
    explicit_layout: Optional[Iterable[LayoutEntry]] = None,
    force: bool = False,
) -> LayoutChange:
    topology = generate(bus_type, total_seats, explicit_layout)
    if previous is None:
        return LayoutChange(topology=topology, added=topology.seat_ids())

    old_ids = set(previous.seat_ids())
    new_ids = set(topology.seat_ids())
    removed = sorted(old_ids - new_ids)
    added = sorted(new_ids - old_ids)
    if removed or added:
        if not force:
            raise LayoutChangeRefused(removed, added)
        logger.warning(
            "Seat layout replaced; trips referencing removed seat ids are invalidated",
            extra={"removed_seat_ids": removed, "added_seat_ids": added},
        )
    return LayoutChange(topology=topology, removed=removed, added=added)
