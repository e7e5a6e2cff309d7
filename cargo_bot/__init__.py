"""CargoExpress Bot Application Package.

A Telegram bot storefront for an international shipping and purchase-proxy
service. Users calculate shipping costs, create shipping, purchase-by-link and
fixed-price orders, pay from their balance and track parcels; admins move
orders through their lifecycle and send broadcasts.

The application follows a modular architecture with separate concerns for:
- Bot command handlers and message templates
- Tariff pricing, VIP discounts and warehouse restriction checks
- Order lifecycle management with audited status transitions
- Redis caching, the SQLite store and the durable background job queue
"""

__version__ = "1.0.0"
