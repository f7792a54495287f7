"""
Microfinance Loan Core

Loan lifecycle and repayment-schedule engine for a microfinance office:
flat-interest amortization, day-granularity repayment schedules, automatic
closure of fully paid loans and due/overdue classification for collections.
"""

__version__ = "1.0.0"
