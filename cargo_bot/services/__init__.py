"""Business logic services package.

Contains the store, cache, pricing, order lifecycle, user ledger, exchange rate
and background job services. Services receive their collaborators through
their constructors and are wired together by the dependency container.
"""
