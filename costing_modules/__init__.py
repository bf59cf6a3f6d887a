"""
Costing Modules.

Thin orchestration layers over the costing kernel and engines.  Each
module contains:
- Domain models (the nouns)
- ORM persistence models
- Workflows (state machines)
- Configuration schemas (policy and settings)
- A service facade that owns the transaction boundary

Modules:
- Purchasing: purchase invoices, freight links, landed cost allocation,
  invoice close and lot cost locking
"""
