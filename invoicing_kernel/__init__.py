"""
Invoicing Kernel - shared infrastructure for the payment-schedule engine.

- Structured JSON logging
- Typed exception hierarchy
- Injectable clock
- SQLAlchemy base classes and session management
"""

__version__ = "0.1.0"
