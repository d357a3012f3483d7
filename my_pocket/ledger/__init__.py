"""
Ledger engine.

- ``months``: ``YYYY-MM`` calendar arithmetic
- ``formula``: amounts typed as text (``"184,28"``, ``"100+50"``)
- ``installments``: which installment of a purchase falls in a month
- ``aggregator``: month totals and balance rollover
- ``templates``: recurring expenses and card purchases

Submodules are imported directly; the models package depends on
``months``, so nothing is re-exported here.
"""
