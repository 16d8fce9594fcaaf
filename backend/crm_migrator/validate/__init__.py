"""
Validation module for the import pipeline.

Validates and normalizes source rows against the target schema.
"""
from crm_migrator.validate.validator import RowValidator, SampleCheck, check_sample, record_key

__all__ = ["RowValidator", "SampleCheck", "check_sample", "record_key"]
