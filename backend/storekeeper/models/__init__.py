from .catalog import Category, Supplier, Product, BulkPricingTier, MONEY
from .inventory import StockMovement, STOCK_IN, STOCK_OUT, ADJUSTMENT, MOVEMENT_TYPES
from .customers import Customer
from .sales import Sale, SaleItem
from .expenses import ExpenseCategory, Expense
from .meta import EngineMeta

__all__ = [
    'Category', 'Supplier', 'Product', 'BulkPricingTier', 'MONEY',
    'StockMovement', 'STOCK_IN', 'STOCK_OUT', 'ADJUSTMENT', 'MOVEMENT_TYPES',
    'Customer',
    'Sale', 'SaleItem',
    'ExpenseCategory', 'Expense',
    'EngineMeta',
]
