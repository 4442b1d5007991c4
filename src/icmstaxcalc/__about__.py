__title__ = "ICMSTaxCalc"
__version__ = "0.3.0"
