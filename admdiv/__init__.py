# admdiv
# 行政区划参考表运维工具：建表、索引、分区并发导出/导入、重排、备份恢复

__version__ = "0.1.0"
