"""stageflow - 构建 / 测试 / 扫描 / 部署流水线执行引擎"""

__version__ = "0.1.0"
