"""
Drive a bank back-office closing run through its process portal.
"""

__version__ = "0.1.0"
