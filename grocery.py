"""
Grocery list aggregation.

A grocery list is a list of groups, one per recipe plus a reserved
miscellaneous group for items added without a recipe. Every function here
takes the current list and returns a new one; groups and items are frozen,
so callers never observe a half-applied change.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app_models import ValidationError

MISC_GROUP_ID = "miscellaneous-items"
MISC_GROUP_NAME = "Miscellaneous Items"


@dataclass(frozen=True)
class GroceryItem:
    """One line on the grocery list."""
    item: str
    checked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"item": self.item, "checked": self.checked}


@dataclass(frozen=True)
class GroceryListRecipe:
    """Items grouped under the recipe they were added from."""
    id: str
    name: str
    ingredients: Tuple[GroceryItem, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "ingredients": [i.to_dict() for i in self.ingredients],
        }

    def has_item(self, name: str) -> bool:
        key = name.lower()
        return any(existing.item.lower() == key for existing in self.ingredients)


def _find_group(groups: List[GroceryListRecipe], group_id: str) -> int:
    for index, group in enumerate(groups):
        if group.id == group_id:
            return index
    return -1


def _merge_items(
    existing: Tuple[GroceryItem, ...],
    ingredients: Iterable[str]
) -> Tuple[GroceryItem, ...]:
    merged = list(existing)
    seen = {i.item.lower() for i in existing}
    for ingredient in ingredients:
        name = str(ingredient).strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        merged.append(GroceryItem(item=name))
    return tuple(merged)


def add_ingredients(
    groups: List[GroceryListRecipe],
    ingredients: Iterable[str],
    recipe_name: Optional[str] = None,
    recipe_id: Optional[str] = None
) -> List[GroceryListRecipe]:
    """
    Add ingredients to the list.

    With both recipe_name and recipe_id the ingredients go to that recipe's
    group, which is created if needed. Otherwise they go to the
    miscellaneous group. Names already in the target group (compared
    case-insensitively) are skipped, and existing items keep their checked
    state.

    Args:
        groups: Current grocery list
        ingredients: Ingredient names to add
        recipe_name: Display name of the originating recipe
        recipe_id: Identifier of the originating recipe

    Returns:
        New grocery list
    """
    if recipe_name and recipe_id:
        group_id, group_name = str(recipe_id), str(recipe_name)
    else:
        group_id, group_name = MISC_GROUP_ID, MISC_GROUP_NAME

    updated = list(groups)
    index = _find_group(updated, group_id)

    if index == -1:
        items = _merge_items((), ingredients)
        if items:
            updated.append(GroceryListRecipe(id=group_id, name=group_name, ingredients=items))
        return updated

    group = updated[index]
    updated[index] = replace(group, ingredients=_merge_items(group.ingredients, ingredients))
    return updated


def remove_item(
    groups: List[GroceryListRecipe],
    group_id: str,
    item: str
) -> List[GroceryListRecipe]:
    """Remove one item from a group, dropping the group if it ends up empty."""
    updated = list(groups)
    index = _find_group(updated, group_id)
    if index == -1:
        return updated

    group = updated[index]
    key = str(item).strip().lower()
    remaining = tuple(i for i in group.ingredients if i.item.lower() != key)
    if remaining:
        updated[index] = replace(group, ingredients=remaining)
    else:
        del updated[index]
    return updated


def toggle_item(
    groups: List[GroceryListRecipe],
    group_id: str,
    item: str
) -> List[GroceryListRecipe]:
    """Flip the checked flag of one item."""
    updated = list(groups)
    index = _find_group(updated, group_id)
    if index == -1:
        return updated

    group = updated[index]
    key = str(item).strip().lower()
    updated[index] = replace(group, ingredients=tuple(
        replace(i, checked=not i.checked) if i.item.lower() == key else i
        for i in group.ingredients
    ))
    return updated


def clear_completed(groups: List[GroceryListRecipe]) -> List[GroceryListRecipe]:
    """Remove every checked item and any group left empty."""
    updated = []
    for group in groups:
        remaining = tuple(i for i in group.ingredients if not i.checked)
        if remaining:
            updated.append(replace(group, ingredients=remaining))
    return updated


def count_remaining(groups: List[GroceryListRecipe]) -> int:
    return sum(1 for group in groups for i in group.ingredients if not i.checked)


def groups_to_dicts(groups: List[GroceryListRecipe]) -> List[Dict[str, Any]]:
    return [group.to_dict() for group in groups]


def groups_from_dicts(data: Any) -> List[GroceryListRecipe]:
    """
    Build a grocery list from its JSON shape.

    Args:
        data: List of {"id", "name", "ingredients": [{"item", "checked"}]}

    Returns:
        List of GroceryListRecipe

    Raises:
        ValidationError: If the structure is malformed
    """
    if not isinstance(data, list):
        raise ValidationError("groceryList must be an array", "groceryList")

    groups = []
    seen_ids = set()
    for entry in data:
        if not isinstance(entry, dict):
            raise ValidationError("Each grocery list entry must be an object", "groceryList")

        group_id = str(entry.get("id") or "").strip()
        if not group_id:
            raise ValidationError("Each grocery list entry needs an id", "groceryList")
        if group_id in seen_ids:
            raise ValidationError(f"Duplicate grocery list entry '{group_id}'", "groceryList")
        seen_ids.add(group_id)

        raw_items = entry.get("ingredients", [])
        if not isinstance(raw_items, list):
            raise ValidationError("ingredients must be an array", "groceryList")

        items = []
        names = set()
        for raw in raw_items:
            if isinstance(raw, str):
                raw = {"item": raw}
            if not isinstance(raw, dict):
                raise ValidationError("Each ingredient must be an object", "groceryList")
            name = str(raw.get("item") or "").strip()
            # blank and repeated names are dropped to keep the group invariant
            if not name or name.lower() in names:
                continue
            names.add(name.lower())
            items.append(GroceryItem(item=name, checked=bool(raw.get("checked", False))))

        if items:
            groups.append(GroceryListRecipe(
                id=group_id,
                name=str(entry.get("name") or group_id),
                ingredients=tuple(items),
            ))
    return groups
