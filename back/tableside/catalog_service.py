"""
Catalog snapshot resolver.

Turns a requested basket (item + modifier selections) into priced, frozen line
snapshots using the restaurant's current catalog. The catalog is read-only
input here; prices copied into a snapshot never change afterwards.
"""

from sqlmodel import Session, SQLModel, select

from . import models
from .errors import OrderValidationError


class CatalogOption(SQLModel):
    id: int
    title: str
    price_delta_cents: int
    is_active: bool = True


class CatalogGroup(SQLModel):
    id: int
    title: str
    min_select: int = 0
    max_select: int = 1
    is_active: bool = True
    options: list[CatalogOption] = []


class CatalogItem(SQLModel):
    id: int
    title: str
    price_cents: int
    is_active: bool = True
    is_available: bool = True
    modifier_groups: list[CatalogGroup] = []


class PricedLine(SQLModel):
    item_id: int
    title: str
    base_price_cents: int
    quantity: int
    note: str | None = None
    selected_modifiers: list[dict] = []
    unit_modifiers_total_cents: int
    unit_total_cents: int
    line_total_cents: int

    def to_order_item(self, order_id: int) -> models.OrderItem:
        return models.OrderItem(
            order_id=order_id,
            menu_item_id=self.item_id,
            title=self.title,
            base_price_cents=self.base_price_cents,
            quantity=self.quantity,
            note=self.note,
            selected_modifiers=self.selected_modifiers,
            unit_modifiers_total_cents=self.unit_modifiers_total_cents,
            unit_total_cents=self.unit_total_cents,
            line_total_cents=self.line_total_cents,
        )


class PricedOrder(SQLModel):
    lines: list[PricedLine]
    subtotal_cents: int


def load_catalog(
    session: Session,
    restaurant_id: int,
    item_ids: list[int],
) -> dict[int, CatalogItem]:
    """Read the requested items of one restaurant with their modifier groups."""
    if not item_ids:
        return {}

    items = session.exec(
        select(models.MenuItem).where(
            models.MenuItem.id.in_(set(item_ids)),
            models.MenuItem.restaurant_id == restaurant_id,
        )
    ).all()
    if not items:
        return {}

    links = session.exec(
        select(models.MenuItemModifierGroup)
        .where(models.MenuItemModifierGroup.menu_item_id.in_([i.id for i in items]))
        .order_by(models.MenuItemModifierGroup.sort_order)
    ).all()

    group_ids = {link.group_id for link in links}
    groups: dict[int, CatalogGroup] = {}
    if group_ids:
        rows = session.exec(
            select(models.ModifierGroup).where(
                models.ModifierGroup.id.in_(group_ids),
                models.ModifierGroup.restaurant_id == restaurant_id,
            )
        ).all()
        options = session.exec(
            select(models.ModifierOption)
            .where(models.ModifierOption.group_id.in_(group_ids))
            .order_by(models.ModifierOption.sort_order, models.ModifierOption.id)
        ).all()
        options_by_group: dict[int, list[CatalogOption]] = {}
        for opt in options:
            options_by_group.setdefault(opt.group_id, []).append(
                CatalogOption(
                    id=opt.id,
                    title=opt.title,
                    price_delta_cents=opt.price_delta_cents,
                    is_active=opt.is_active,
                )
            )
        for group in rows:
            groups[group.id] = CatalogGroup(
                id=group.id,
                title=group.title,
                min_select=group.min_select,
                max_select=group.max_select,
                is_active=group.is_active,
                options=options_by_group.get(group.id, []),
            )

    groups_by_item: dict[int, list[CatalogGroup]] = {}
    for link in links:
        # A link to another restaurant's group is dropped with the group
        group = groups.get(link.group_id)
        if group is not None:
            groups_by_item.setdefault(link.menu_item_id, []).append(group)

    return {
        item.id: CatalogItem(
            id=item.id,
            title=item.title,
            price_cents=item.price_cents,
            is_active=item.is_active,
            is_available=item.is_available,
            modifier_groups=groups_by_item.get(item.id, []),
        )
        for item in items
    }


def _unique(ids: list[int]) -> list[int]:
    seen: set[int] = set()
    out = []
    for value in ids:
        if value not in seen:
            seen.add(value)
            out.append(value)
    return out


def _check_selection_bounds(
    item: CatalogItem,
    group: CatalogGroup,
    chosen: list[int],
    field: str,
) -> None:
    min_select = max(0, group.min_select)
    max_select = max(1, group.max_select)

    if max_select <= 1 and len(chosen) > 1:
        raise OrderValidationError(
            f'"{group.title}" on "{item.title}" allows a single choice, got {len(chosen)}',
            field=field,
            code="modifier_single_select",
        )
    if len(chosen) > max_select:
        raise OrderValidationError(
            f'"{group.title}" on "{item.title}" allows at most {max_select} choices, got {len(chosen)}',
            field=field,
            code="modifier_max_exceeded",
        )
    if len(chosen) < min_select:
        raise OrderValidationError(
            f'"{group.title}" on "{item.title}" needs at least {min_select} choices, got {len(chosen)}',
            field=field,
            code="modifier_min_not_met",
        )


def _price_line(
    item: CatalogItem,
    requested: models.OrderItemCreate,
    field: str,
) -> PricedLine:
    groups_by_id = {group.id: group for group in item.modifier_groups}

    chosen_by_group: dict[int, list[int]] = {}
    for selection in requested.selected_modifiers:
        group = groups_by_id.get(selection.group_id)
        if group is None:
            raise OrderValidationError(
                f'Modifier group {selection.group_id} is not offered on "{item.title}"',
                field=f"{field}.selected_modifiers",
                code="modifier_group_not_allowed",
            )
        if selection.group_id in chosen_by_group:
            raise OrderValidationError(
                f'Modifier group "{group.title}" is listed more than once for "{item.title}"',
                field=f"{field}.selected_modifiers",
                code="modifier_group_repeated",
            )
        if not group.is_active:
            raise OrderValidationError(
                f'"{group.title}" is not available right now',
                field=f"{field}.selected_modifiers",
                code="modifier_group_inactive",
            )
        chosen_by_group[selection.group_id] = _unique(selection.option_ids)

    snapshots = []
    unit_modifiers_total = 0
    for group in item.modifier_groups:
        if not group.is_active:
            continue
        chosen = chosen_by_group.get(group.id, [])
        group_field = f"{field}.selected_modifiers[{group.id}]"
        _check_selection_bounds(item, group, chosen, group_field)

        options_by_id = {option.id: option for option in group.options}
        snapped_options = []
        for option_id in chosen:
            option = options_by_id.get(option_id)
            if option is None:
                raise OrderValidationError(
                    f'Option {option_id} does not belong to "{group.title}"',
                    field=group_field,
                    code="modifier_option_invalid",
                )
            if not option.is_active:
                raise OrderValidationError(
                    f'"{option.title}" in "{group.title}" is not available right now',
                    field=group_field,
                    code="modifier_option_inactive",
                )
            unit_modifiers_total += option.price_delta_cents
            snapped_options.append({
                "option_id": option.id,
                "option_title": option.title,
                "price_delta_cents": option.price_delta_cents,
            })

        if snapped_options:
            snapshots.append({
                "group_id": group.id,
                "group_title": group.title,
                "options": snapped_options,
            })

    unit_total = item.price_cents + unit_modifiers_total
    return PricedLine(
        item_id=item.id,
        title=item.title,
        base_price_cents=item.price_cents,
        quantity=requested.quantity,
        note=(requested.note or "").strip() or None,
        selected_modifiers=snapshots,
        unit_modifiers_total_cents=unit_modifiers_total,
        unit_total_cents=unit_total,
        line_total_cents=unit_total * requested.quantity,
    )


def resolve_order_lines(
    catalog: dict[int, CatalogItem],
    requested: list[models.OrderItemCreate],
) -> PricedOrder:
    """
    Price every requested line against the catalog.

    The whole basket is rejected on the first invalid line; a partially priced
    result is never returned.
    """
    if not requested:
        raise OrderValidationError("Order must have at least one item", field="items", code="items_required")

    lines = []
    for index, line in enumerate(requested):
        field = f"items[{index}]"
        item = catalog.get(line.item_id)
        if item is None:
            raise OrderValidationError(
                f"Item {line.item_id} is not on this menu",
                field=field,
                code="item_not_found",
            )
        if not item.is_active or not item.is_available:
            raise OrderValidationError(
                f'"{item.title}" cannot be ordered right now',
                field=field,
                code="item_not_available",
            )
        if line.quantity < 1:
            raise OrderValidationError("Quantity must be at least 1", field=f"{field}.quantity")
        lines.append(_price_line(item, line, field))

    return PricedOrder(lines=lines, subtotal_cents=sum(line.line_total_cents for line in lines))


def price_basket(
    session: Session,
    restaurant_id: int,
    requested: list[models.OrderItemCreate],
) -> PricedOrder:
    """Load the catalog for a basket and price it."""
    catalog = load_catalog(session, restaurant_id, [line.item_id for line in requested])
    return resolve_order_lines(catalog, requested)
