"""执行引擎层（engine）。

- `SymbolEngine`：单品种逐 bar 推进；
- `BacktestEngine`：单品种回测；
- `MultiSymbolOrchestrator`：多品种同步步进 + 组合风控。

命令行入口由仓库根目录 `main.py` 统一承载。
"""
