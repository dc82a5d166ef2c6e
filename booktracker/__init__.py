"""Book Tracker - Core Application Package

This package contains the core application modules including:
- Data model (book.py)
- Statistics and client-side filtering (stats.py)
- Synchronized book collection (store.py)
- Document store backends (services/)
"""
