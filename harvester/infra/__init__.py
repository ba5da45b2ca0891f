"""
Infrastructure: HTTP client and SQLite database.
"""
