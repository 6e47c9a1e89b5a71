"""
Fitting sessions: units of work (category x window), per-unit model
fitting and result files.
"""
