"""韩国/海外交易所 泡菜溢价对冲套利 仓位引擎"""

__version__ = "1.0.0"
