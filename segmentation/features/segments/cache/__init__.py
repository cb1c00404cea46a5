from .materialization import MaterializationCache

__all__ = ["MaterializationCache"]
