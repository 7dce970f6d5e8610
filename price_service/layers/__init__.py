"""
数据流分层架构
  Layer 1 – Acquisition  : 数据获取（实时行情 / 批量净值），rate_limit 为每个数据源的请求配额
  Layer 2 – Cache        : 两级缓存（内存 → MongoDB），store 为持久化记录存储
"""
