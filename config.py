"""
Configuration module for the flow runner.
Loads settings from environment variables or .env file.
流程运行器配置模块。
从环境变量或 .env 文件加载所有配置项。
"""

import os
from dotenv import load_dotenv

load_dotenv()  # 自动读取项目根目录的 .env 文件（若存在），优先级低于系统环境变量

# --- Scheduler loop ---
# --- 调度循环 ---
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "0.05"))  # 无任务可派发时两轮之间的最长等待（秒），0 表示仅让出事件循环
MAX_ITERATIONS = int(os.getenv("MAX_ITERATIONS", "0"))                     # 最大循环轮数，0 表示不限制（超过则结果为 STALLED）

# --- Dependency graph ---
# --- 依赖图 ---
MISSING_DEPENDENCY_POLICY = os.getenv("MISSING_DEPENDENCY_POLICY", "reject")  # "reject" | "never_ready" | "no_dependencies"

# --- Task kinds ---
# --- 任务类型参数 ---
COMMAND_TIMEOUT = float(os.getenv("COMMAND_TIMEOUT", "0"))  # command 任务的默认超时（秒），0 表示不限制
