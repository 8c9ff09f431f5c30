from .domain.persistence import CostLineItemStore
from .domain.service import IngestionService

__all__ = ["CostLineItemStore", "IngestionService"]
