# trip_engine/core/__init__.py
"""
Доменный слой (Core Domain).
Бизнес-логика поездок, независимая от транспорта и хранилища.
"""
