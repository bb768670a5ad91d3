"""LibraryHub - Services Package

This package contains the application services:
- Catalog service (books)
- User service (accounts, profiles, administration)
- Borrowing service (borrow/return workflow)
- Notification service
- Real-time delivery channel (presence and push)
"""
