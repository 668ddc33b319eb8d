# trip_engine/infra/__init__.py
"""
Инфраструктура: PostgreSQL, живые уведомления, шлюзы внешних сервисов.
"""
