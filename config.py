"""
Configuration module for minidag.
Loads settings from environment variables or .env file.
minidag 配置模块。
从环境变量或 .env 文件加载所有配置项。
"""

import os
from dotenv import load_dotenv

load_dotenv()  # 自动读取项目根目录的 .env 文件（若存在），优先级低于系统环境变量

# --- Paths ---
# --- 路径 ---
MINIDAG_HOME = os.path.expanduser(os.getenv("MINIDAG_HOME", "~/.minidag"))                      # 运行时数据根目录
DAGS_FOLDER = os.path.expanduser(
    os.getenv("DAGS_FOLDER", os.path.join(os.path.dirname(__file__), "example_dags"))
)                                                                                                # DAG 定义文件所在目录
STATE_FILE = os.path.expanduser(os.getenv("STATE_FILE", os.path.join(MINIDAG_HOME, "state.json")))  # 状态存储 JSON 文件
LOG_FOLDER = os.path.expanduser(os.getenv("LOG_FOLDER", os.path.join(MINIDAG_HOME, "logs")))        # 任务日志目录

# --- Executor ---
# --- 执行后端 ---
EXECUTOR = os.getenv("EXECUTOR", "local")                   # "sequential" | "local" | "queued"
PARALLELISM = int(os.getenv("PARALLELISM", "4"))            # 同时运行的任务实例上限（worker 数）
TASK_EXECUTION_TIMEOUT = float(os.getenv("TASK_EXECUTION_TIMEOUT", "0"))  # 全局任务超时（秒），0 表示不限制

# --- Scheduler ---
# --- 调度器 ---
SCHEDULER_TICK_SECONDS = float(os.getenv("SCHEDULER_TICK_SECONDS", "5"))   # 调度循环心跳间隔
MAX_ACTIVE_RUNS = int(os.getenv("MAX_ACTIVE_RUNS", "16"))                  # 每个 DAG 默认最多同时运行的 DagRun 数
CATCHUP_BY_DEFAULT = os.getenv("CATCHUP_BY_DEFAULT", "false").lower() == "true"  # 是否默认补跑错过的区间
DAG_RUN_RETENTION = int(os.getenv("DAG_RUN_RETENTION", "100"))              # 每个 DAG 保留的已结束运行数，0 表示全部保留

# --- Task defaults ---
# --- 任务默认参数 ---
DEFAULT_RETRIES = int(os.getenv("DEFAULT_RETRIES", "0"))                          # 默认重试次数
DEFAULT_RETRY_DELAY_SECONDS = float(os.getenv("DEFAULT_RETRY_DELAY_SECONDS", "300"))  # 默认重试间隔
MAX_RETRY_DELAY_SECONDS = float(os.getenv("MAX_RETRY_DELAY_SECONDS", "86400"))        # 指数退避的上限
DEFAULT_TRIGGER_RULE = os.getenv("DEFAULT_TRIGGER_RULE", "all_success")

# --- Email (EmailOperator) ---
# --- 邮件 ---
SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", "25"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_STARTTLS = os.getenv("SMTP_STARTTLS", "false").lower() == "true"
SMTP_MAIL_FROM = os.getenv("SMTP_MAIL_FROM", "minidag@localhost")
SMTP_TIMEOUT = int(os.getenv("SMTP_TIMEOUT", "30"))
