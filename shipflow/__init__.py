"""ShipFlow: multi-carrier fulfillment orchestration on top of EasyPost."""

__version__ = "0.4.0"
