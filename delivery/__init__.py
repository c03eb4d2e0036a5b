# 渐进式发布控制器
"""在稳定版本与候选版本之间分步切流，依据指标自动晋升或回滚"""

__version__ = "1.0.0"
