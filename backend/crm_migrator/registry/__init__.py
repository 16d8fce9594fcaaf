"""
Registry module for loading the target CRM schema.
"""
from crm_migrator.registry.loader import FieldSpec, TableSpec, TargetSchema, load_schema

__all__ = ["FieldSpec", "TableSpec", "TargetSchema", "load_schema"]
