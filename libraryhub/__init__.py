"""LibraryHub - library management backend

This package contains the core application modules including:
- API endpoints and the WebSocket channel (api.py)
- Borrowing, notification, catalog and user services (services/)
- Domain models (models.py)
- Database layer (database.py)
- CLI interface (cli.py)
"""

__version__ = "1.0.0"
