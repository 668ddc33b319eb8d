# trip_engine/core/trips/__init__.py
"""
Домен поездок: модели, state machine, репозитории и оркестратор.
Оркестратор импортируется напрямую из trip_engine.core.trips.service.
"""
