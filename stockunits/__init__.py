"""FIFO unit-level inventory tracking.

Products are received as batches of individually numbered units. The HTTP app
lives in :mod:`stockunits.main`; the inventory operations live under
``services`` and ``crud`` and only need a SQLAlchemy session.
"""

__version__ = "0.1.0"
