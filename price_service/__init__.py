"""
Portfolio 价格服务
为投资组合看板提供"某个标的当前价格"的统一解析接口

架构分层：
  数据获取层 (Acquisition)  → 实时行情接口 / 批量净值文件
  缓存层     (Cache)        → 进程内字典 → MongoDB 两级缓存
  服务层     (Services)     → 单标的解析、批量获取、定时刷新
"""

__version__ = "1.0.0"
