"""
Transform module for value normalization.
"""
from crm_migrator.transform.normalizers import (
    normalize_phone,
    normalize_email,
    normalize_date_any,
    coerce_bool,
    coerce_enum,
    NormalizeError,
)

__all__ = [
    "normalize_phone",
    "normalize_email",
    "normalize_date_any",
    "coerce_bool",
    "coerce_enum",
    "NormalizeError",
]
