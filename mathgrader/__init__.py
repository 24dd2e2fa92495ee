"""
Math Grader - grading orchestration and confidence engine for math homework.

This package grades photographed worksheets by combining handwriting OCR,
a vision language model and a symbolic solver into one scored,
confidence-rated result, and processes whole assignments in bulk with an
auditable token ledger.
"""

__version__ = "1.0.0"
__author__ = "Math Grader Team"
