# ==============================================================================
# Visitor Telemetry
# ==============================================================================
"""
Visitor telemetry store.

Persists per-visitor sessions, location fixes, address geolocations and
interaction events behind one async storage interface with three
interchangeable backends (JSON files, SQLite, OpenSearch), and resolves
visitor location through a device -> network address -> timezone fallback.
"""
