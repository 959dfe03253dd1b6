"""
QuoteBench - DEX 报价基准测试与链上 swap 模拟
"""

__version__ = "0.1.0"
