from importlib import import_module

__all__ = [
    "analysis",
]

_LAZY_EXPORTS = {
    "analysis": "services.analysis",
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    value = import_module(_LAZY_EXPORTS[name])
    globals()[name] = value
    return value
