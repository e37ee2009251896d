# errors.py
"""
Engine exception hierarchy.

Store outages surface as SQLAlchemy / OS errors and are not wrapped here.
"""


class EngineError(Exception):
    """Base engine error"""


class StateError(EngineError):
    """Action performed in invalid state"""


class BetError(EngineError):
    """Invalid bet parameters"""


class FairnessError(EngineError):
    """Secure entropy source unavailable"""


class RoundMissingError(EngineError):
    """The shared round record disappeared (external reset)"""


class HistoryError(EngineError):
    """History append failed after all retries"""
