# trip_engine/__init__.py
"""
Trip Engine: сервис оркестрации поездок.
Котировки, подбор водителя, state machine поездки и живые события.
"""

__version__ = "0.6.0"
