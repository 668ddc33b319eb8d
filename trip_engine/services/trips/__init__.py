# trip_engine/services/trips/__init__.py
"""
Trip Service: HTTP API поверх оркестратора поездок.
"""
