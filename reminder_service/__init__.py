__version__ = '0.1.0'

__all__ = ['app', '__version__']


def __getattr__(name: str):
    if name == 'app':
        from .main import app

        return app
    raise AttributeError(name)
