"""
Pure costing engines: FIFO planning, bundle explosion, moving average and
availability.  No engine performs I/O; services load state, call an engine,
and persist what it returns.
"""
