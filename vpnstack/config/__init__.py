"""Deployment parameter loading."""
from vpnstack.config.loader import ParameterLoader, find_config
from vpnstack.core.errors import ParameterValidationError

__all__ = ['ParameterLoader', 'ParameterValidationError', 'find_config']
