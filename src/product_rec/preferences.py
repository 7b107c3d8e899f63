from dataclasses import dataclass, field

from .errors import InvalidConfigurationError
from .sources import ItemDescriptor


@dataclass(frozen=True)
class RecommendationPreferences:
    """
    Per-request shopper preferences.

    Categories are matched case-insensitively. Price bounds are inclusive.
    Items the catalog does not describe are never filtered out.
    """

    excluded_categories: frozenset[str] = field(default_factory=frozenset)
    min_price: float | None = None
    max_price: float | None = None

    def __post_init__(self) -> None:
        normalized = frozenset(c.strip().lower() for c in self.excluded_categories if c and c.strip())
        object.__setattr__(self, "excluded_categories", normalized)
        self.validate()

    def validate(self) -> None:
        if self.min_price is not None and self.min_price < 0:
            raise InvalidConfigurationError("min_price must be non-negative", details={"min_price": self.min_price})
        if self.max_price is not None and self.max_price < 0:
            raise InvalidConfigurationError("max_price must be non-negative", details={"max_price": self.max_price})
        if self.min_price is not None and self.max_price is not None and self.min_price > self.max_price:
            raise InvalidConfigurationError(
                f"min_price ({self.min_price}) exceeds max_price ({self.max_price})",
                details={"min_price": self.min_price, "max_price": self.max_price},
            )

    @property
    def is_empty(self) -> bool:
        return not self.excluded_categories and self.min_price is None and self.max_price is None

    def allows(self, item: ItemDescriptor) -> bool:
        if item.category and item.category.strip().lower() in self.excluded_categories:
            return False
        if self.min_price is not None and item.price < self.min_price:
            return False
        if self.max_price is not None and item.price > self.max_price:
            return False
        return True

    def blocked_items(self, items: list[ItemDescriptor]) -> frozenset[str]:
        """Ids of the catalog items these preferences rule out."""
        if self.is_empty:
            return frozenset()
        return frozenset(item.item_id for item in items if not self.allows(item))
