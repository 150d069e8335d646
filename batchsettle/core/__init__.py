"""
batchsettle core: errors, time, fixed-point units, access control,
transactions and the signed event journal.
"""
