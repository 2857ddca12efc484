"""
PerpVault Package

Core imports are lazily loaded so that importing a submodule does not pull
in the whole venue. For direct module access, import from submodules:

    from perpvault.exchange import Venue, InMemoryLedger, StaticPriceFeed
    from perpvault.config import load_config
    from perpvault.exceptions import PerpVaultException
"""

__version__ = "2.0.0"


def __getattr__(name):
    """Lazy module loading."""
    if name == 'Venue':
        from .exchange.venue import Venue
        return Venue
    elif name == 'load_config':
        from .config import load_config
        return load_config
    elif name == 'PerpVaultException':
        from .exceptions import PerpVaultException
        return PerpVaultException
    raise AttributeError(f"module 'perpvault' has no attribute {name!r}")

__all__ = ['Venue', 'load_config', 'PerpVaultException']
