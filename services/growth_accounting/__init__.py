"""
Growth Accounting for RepoPulse.

This package is responsible for:
- Turning stored commits into a per-author activity stream
- Monthly active user and value-weighted growth decompositions
- Weekly and monthly cohort lifetime value curves
"""

__version__ = "1.0.0"
__author__ = "RepoPulse Team"
__description__ = "Growth accounting over repository commit activity"
