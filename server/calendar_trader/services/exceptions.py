"""
Domain-specific exceptions for the execution engine
"""


class TradingEngineError(Exception):
    """Base exception for the execution engine"""
    pass


class StrategyParseError(TradingEngineError):
    """Raised when a strategy string does not match the expected grammar"""
    pass


class StrategyImportError(TradingEngineError):
    """Raised when a bulk import payload cannot be read"""
    pass


class ExecutorConfigError(TradingEngineError):
    """Raised when the executor is started without a usable configuration"""
    pass


class ExecutorStateError(TradingEngineError):
    """Raised when a lifecycle command does not fit the executor's state"""
    pass


class RepositoryError(TradingEngineError):
    """Raised when no storage backend could complete an operation"""
    pass
