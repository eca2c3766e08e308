"""
Executable scripts for the carbon stock estimation component.

Scripts:
    run_carbon_stock_estimation.py: Main carbon stock estimation pipeline

Author: Diego Bengochea
"""

from .run_carbon_stock_estimation import main as run_carbon_stock_estimation

__all__ = [
    "run_carbon_stock_estimation"
]
