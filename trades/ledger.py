"""Item ledger for trade proposals.

A ledger is the fixed bundle of a proposal: what the proposer offers and
what they request in return. It is validated once, when the proposal is
created, and never changes afterwards.
"""
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from core.errors import InvalidProposalError
from core.models import ItemDirection, ProposalItem


class ItemLedger:
    """Immutable, validated offer/request bundle."""

    def __init__(self, items: Iterable[ProposalItem]):
        items = tuple(items)
        seen: Dict[Tuple[int, ItemDirection], ProposalItem] = {}

        for item in items:
            if isinstance(item.quantity, bool) or item.quantity <= 0:
                raise InvalidProposalError(
                    f"Quantity for sticker {item.sticker_id} must be a positive integer"
                )
            key = (item.sticker_id, item.direction)
            if key in seen:
                raise InvalidProposalError(
                    f"Sticker {item.sticker_id} appears twice on the {item.direction.value} side"
                )
            seen[key] = item

        if not items:
            raise InvalidProposalError("A proposal must offer or request at least one item")

        self._items = items

    @classmethod
    def from_bundles(
        cls,
        offer: Optional[Iterable[Mapping]] = None,
        request: Optional[Iterable[Mapping]] = None
    ) -> 'ItemLedger':
        """Build a ledger from offer/request lines of {sticker_id, quantity}."""
        items: List[ProposalItem] = []
        for direction, lines in ((ItemDirection.OFFER, offer), (ItemDirection.REQUEST, request)):
            for line in lines or []:
                items.append(ProposalItem(
                    sticker_id=line['sticker_id'],
                    direction=direction,
                    quantity=line['quantity']
                ))
        return cls(items)

    @property
    def items(self) -> List[ProposalItem]:
        return list(self._items)

    def by_direction(self, direction: ItemDirection) -> List[ProposalItem]:
        return [i for i in self._items if i.direction == direction]

    @property
    def offers(self) -> List[ProposalItem]:
        return self.by_direction(ItemDirection.OFFER)

    @property
    def requests(self) -> List[ProposalItem]:
        return self.by_direction(ItemDirection.REQUEST)

    def offered_quantities(self) -> Dict[int, int]:
        return {i.sticker_id: i.quantity for i in self.offers}

    def requested_quantities(self) -> Dict[int, int]:
        return {i.sticker_id: i.quantity for i in self.requests}

    def __len__(self):
        return len(self._items)

    def __iter__(self):
        return iter(self._items)
