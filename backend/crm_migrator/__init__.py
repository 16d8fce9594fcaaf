"""
CRM migrator - moves spreadsheet CRM data into a relational target schema.
"""
__version__ = "0.1.0"
