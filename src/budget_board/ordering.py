"""Company grouping and drag-and-drop reordering of pinned items.

Two orderings are maintained: ``company_order`` (list of company ids) and
the implicit per-company item order, i.e. the subsequence of ``items``
belonging to each company. Every function here is pure: inputs are never
mutated and a rejected move raises before producing anything.
"""

from dataclasses import dataclass, field

from budget_board.models import ItemRef, TrackedItem


class InvariantViolation(Exception):  # noqa: N818
    """Raised when a move would break a grouping invariant (e.g. cross-company)."""

    pass


class ItemNotFound(KeyError):  # noqa: N818
    """Raised when an item reference is not on the dashboard."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Item not found"


class CompanyNotFound(KeyError):  # noqa: N818
    """Raised when a company id has no items on the dashboard."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Company not found"


@dataclass
class CompanyGroup:
    """One company block and its items, in display order."""

    company_id: str
    company_name: str
    items: list[TrackedItem] = field(default_factory=list)


def _index_of(items: list[TrackedItem], ref: ItemRef) -> int:
    for index, item in enumerate(items):
        if item.kind == ref.kind and item.id == ref.id:
            return index
    return -1


def distinct_companies(items: list[TrackedItem]) -> list[str]:
    """Company ids in order of first appearance."""
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item.company_id, None)
    return list(seen)


def reconcile_company_order(items: list[TrackedItem], company_order: list[str]) -> list[str]:
    """Make ``company_order`` list exactly the companies present in ``items``.

    Known companies keep their relative order; companies with no items are
    dropped; new companies are appended in order of first appearance.
    """
    present = distinct_companies(items)
    present_set = set(present)
    order: list[str] = []
    for company_id in company_order:
        if company_id in present_set and company_id not in order:
            order.append(company_id)
    order.extend(company_id for company_id in present if company_id not in order)
    return order


def group_by_company(items: list[TrackedItem], company_order: list[str]) -> list[CompanyGroup]:
    """Group items into company blocks following ``company_order``."""
    groups: dict[str, CompanyGroup] = {}
    for item in items:
        group = groups.get(item.company_id)
        if group is None:
            group = groups[item.company_id] = CompanyGroup(item.company_id, item.company_name)
        group.items.append(item)

    return [groups[company_id] for company_id in reconcile_company_order(items, company_order)]


def move_item(
    items: list[TrackedItem],
    ref: ItemRef,
    target_company_id: str,
    after: ItemRef | None = None,
) -> list[TrackedItem]:
    """Reorder an item within its own company.

    Args:
        items: Current dashboard items
        ref: Item being moved
        target_company_id: Company block the item was dropped on
        after: Item to insert after, or None for the front of the company's items

    Returns:
        New item list

    Raises:
        ItemNotFound: If ``ref`` or ``after`` is not on the dashboard
        InvariantViolation: If the target (or anchor) belongs to another company
    """
    current_index = _index_of(items, ref)
    if current_index == -1:
        raise ItemNotFound(f"Item {ref} is not on this dashboard")

    item = items[current_index]
    if str(target_company_id) != item.company_id:
        raise InvariantViolation(
            f"Items cannot be moved between companies ({ref} belongs to company {item.company_id})"
        )

    if after is not None and after == ref:
        return list(items)

    remaining = items[:current_index] + items[current_index + 1 :]

    if after is not None:
        # Locate the anchor after removal so a shifted anchor index is accounted for
        anchor_index = _index_of(remaining, after)
        if anchor_index == -1:
            raise ItemNotFound(f"Anchor item {after} is not on this dashboard")
        if remaining[anchor_index].company_id != item.company_id:
            raise InvariantViolation(
                f"Anchor {after} belongs to company {remaining[anchor_index].company_id}, "
                f"not {item.company_id}"
            )
        insert_at = anchor_index + 1
    else:
        insert_at = next(
            (i for i, other in enumerate(remaining) if other.company_id == item.company_id),
            len(remaining),
        )

    return remaining[:insert_at] + [item] + remaining[insert_at:]


def move_company(
    items: list[TrackedItem],
    company_order: list[str],
    company_id: str,
    after: str | None = None,
) -> tuple[list[TrackedItem], list[str]]:
    """Move a company block and rebuild the item list to match.

    Args:
        items: Current dashboard items
        company_order: Current company order (may lag behind items)
        company_id: Company being moved
        after: Company to insert after, or None for the front

    Returns:
        Tuple of (items, company_order); items are concatenated per company
        in the new order, keeping each company's relative item order.

    Raises:
        CompanyNotFound: If ``company_id`` or ``after`` has no items
    """
    company_id = str(company_id)
    order = reconcile_company_order(items, company_order)

    if company_id not in order:
        raise CompanyNotFound(f"Company {company_id} is not on this dashboard")

    if after is not None:
        after = str(after)
        if after not in order:
            raise CompanyNotFound(f"Anchor company {after} is not on this dashboard")
        if after == company_id:
            return rebuild_items(items, order), order

    order.remove(company_id)
    insert_at = order.index(after) + 1 if after is not None else 0
    order.insert(insert_at, company_id)

    return rebuild_items(items, order), order


def rebuild_items(items: list[TrackedItem], company_order: list[str]) -> list[TrackedItem]:
    """Concatenate each company's items in ``company_order`` order."""
    by_company: dict[str, list[TrackedItem]] = {}
    for item in items:
        by_company.setdefault(item.company_id, []).append(item)
    rebuilt: list[TrackedItem] = []
    for company_id in reconcile_company_order(items, company_order):
        rebuilt.extend(by_company[company_id])
    return rebuilt
