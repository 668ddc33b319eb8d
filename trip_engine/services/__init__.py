# trip_engine/services/__init__.py
"""
HTTP сервисы.
"""
