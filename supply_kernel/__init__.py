"""
Supply Kernel

Shared foundation for the procurement workflow engine:
- Declarative ORM base with UUID keys and audit columns
- Engine and session factory management
- Typed exception hierarchy
- Structured JSON logging with context propagation
- Injectable clock and workflow state-machine types
"""

__version__ = "0.1.0"
