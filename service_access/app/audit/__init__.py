"""
Audit package for the Access Service.

Stores one immutable entry per access attempt and answers queries,
CSV exports, aggregate statistics and repeated-failure detection over
a tenant's log.
"""
