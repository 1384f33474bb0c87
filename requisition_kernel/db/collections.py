"""Collection names used in the ``documents`` table."""

REQUISITIONS = "Requisitions"
RESERVATIONS = "RequisitionReservations"
INVENTORY_LEDGER = "InventoryLedger"
LEDGER_KEY = "latest"
WIP_BATCHES = "WIP_Batches"
DISPATCHES = "RequisitionDispatches"
USERS = "Users"
AUDIT_LOG = "AuditLog"
NOTIFICATION_QUEUE = "NotificationQueue"
FORMULA_REQUESTS = "FormulaRequests"
STOCK_ADJUSTMENTS = "StockAdjustmentRequests"
REQUEST_THREADS = "RequestThreads"
CONSUMED_SLIPS = "ConsumedSlips"
COUNTERS = "Counters"
