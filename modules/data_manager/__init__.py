"""
Data Manager Module
===================

Responsibility:
- Loading of the observation table (CSV, Parquet, Excel).
- Pivoting tidy taxa tables into one column per taxon.
- Validation of shape, types, and value ranges.
- Persistence of validated data for downstream consumption.
"""

from .data_manager import DataManager

__all__ = ['DataManager']
