"""Library Circulation - Core Application Package

This package contains the core application modules including:
- API endpoints (api.py)
- Loan lifecycle logic (lifecycle.py)
- Catalog, loan, reservation and user stores
- CLI interface (cli.py)
- Data models (models.py)
- Database layer (database.py)
"""
