"""
Spot Guardian - keeps a fleet of spot instances running and within its
monthly traffic budget.
"""

__version__ = "0.1.0"
