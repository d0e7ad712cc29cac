"""
Supply Modules.

Workflow orchestration over the supply kernel and engines.
Each module contains:
- Domain models (the nouns, as frozen DTOs)
- ORM persistence models
- Workflows (state machines) where the documents have a lifecycle
- Services that own the transaction boundary

Modules:
- Budget: Budget request items (quarterly plans and purchased quantities)
- Procurement: Purchase requests, purchase orders, receipts
- Inventory: Lots, on-hand records, stock transactions
- Contracts: Vendor contracts and contract prices
"""
