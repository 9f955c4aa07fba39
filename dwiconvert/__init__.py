# __init__.py for dwiconvert

__version__ = "0.1.0"
