"""orderflow - order fulfillment core: orders, payments, courier hand-off and returns."""

__version__ = "0.1.0"
