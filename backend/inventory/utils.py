from typing import Dict, Iterable, Mapping, Optional, Tuple
from backend.inventory.constants import MAX_SIZE_LABEL_LEN
from backend.schema.full_schema import InventoryStatus


def derive_size_status(qty: int, threshold: int) -> InventoryStatus:
    if qty == 0:
        return InventoryStatus.OUT_OF_STOCK
    if qty <= threshold:
        return InventoryStatus.LOW_STOCK
    return InventoryStatus.IN_STOCK


def derive_inventory_status(quantity: int, size_quantities: Iterable[int], threshold: int) -> InventoryStatus:
    """Overall status from the aggregate and (when tracked) the per-size counts.

    out_of_stock when nothing is left or every size is sold out, low_stock when any
    size or the aggregate is at/below the threshold, in_stock otherwise.
    """
    size_statuses = [derive_size_status(q, threshold) for q in size_quantities]

    if quantity == 0:
        return InventoryStatus.OUT_OF_STOCK
    if size_statuses and all(s == InventoryStatus.OUT_OF_STOCK for s in size_statuses):
        return InventoryStatus.OUT_OF_STOCK
    if size_statuses and any(s != InventoryStatus.IN_STOCK for s in size_statuses):
        return InventoryStatus.LOW_STOCK
    if quantity <= threshold:
        return InventoryStatus.LOW_STOCK
    return InventoryStatus.IN_STOCK


def low_stock_sizes(sizes: Mapping[str, int], threshold: int) -> list:
    out = []
    for size, qty in sorted(sizes.items()):
        status = derive_size_status(qty, threshold)
        if status != InventoryStatus.IN_STOCK:
            out.append({"size": size, "quantity": qty, "status": status.value})
    return out


def normalize_size_label(size: Optional[str]) -> Optional[str]:
    if size is None:
        return None
    label = size.strip().upper()
    if not label:
        return None
    if len(label) > MAX_SIZE_LABEL_LEN:
        raise ValueError(f"size label too long: {size!r}")
    return label


def validate_size_map(sizes: Mapping[str, int], *, allow_negative: bool = False) -> Dict[str, int]:
    """Normalized {size: int} with non-empty labels; counts are non-negative unless allow_negative."""
    out: Dict[str, int] = {}
    for raw_size, raw_qty in sizes.items():
        size = normalize_size_label(raw_size)
        if size is None:
            raise ValueError("size label must not be empty")
        if isinstance(raw_qty, bool) or int(raw_qty) != raw_qty:
            raise ValueError(f"quantity for size {size} must be an integer")
        qty = int(raw_qty)
        if qty < 0 and not allow_negative:
            raise ValueError(f"quantity for size {size} must be >= 0")
        out[size] = out.get(size, 0) + qty
    return out


def split_breakdown(sizes: Mapping[Optional[str], int]) -> Tuple[Dict[str, int], int]:
    """Separate sized quantities from the unsized remainder (key None)."""
    sized = {s: int(q) for s, q in sizes.items() if s is not None and int(q) > 0}
    unsized = int(sizes.get(None, 0) or 0)
    return sized, unsized
