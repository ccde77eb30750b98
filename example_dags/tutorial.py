"""
Tutorial DAG - the classic first pipeline.
教程 DAG —— 经典的入门流水线。

print_date >> [sleep, templated]; the TaskFlow half extracts a small order
summary, transforms it and loads the total, then an email reports the run.
print_date >> [sleep, templated]；TaskFlow 部分提取订单数据、转换并加载总额，最后发送邮件报告。
"""

from datetime import datetime, timedelta

from dag.decorators import dag, task
from dag.graph import DAG
from operators import BashOperator, EmailOperator, EmptyOperator

default_args = {
    "retries": 1,
    "retry_delay": timedelta(seconds=5),
}

with DAG(
    "tutorial",
    schedule=timedelta(days=1),
    start_date=datetime(2024, 1, 1),
    catchup=False,
    default_args=default_args,
    description="A simple tutorial DAG",
    tags=["example"],
    params={"my_param": "hello"},
) as tutorial:
    print_date = BashOperator(task_id="print_date", bash_command="date")

    sleep = BashOperator(task_id="sleep", bash_command="sleep 1", retries=3)

    templated = BashOperator(
        task_id="templated",
        bash_command=(
            "for i in 1 2 3; do echo \"run {{ run_id }} for {{ ds }}\"; done; "
            "echo \"param: {{ params.my_param }}\""
        ),
        env={"TUTORIAL_DS": "{{ ds_nodash }}"},
    )
    done = EmptyOperator(task_id="done", trigger_rule="none_failed")

    print_date >> [sleep, templated] >> done


@dag(
    schedule=None,
    start_date=datetime(2024, 1, 1),
    tags=["example"],
    default_args={"retries": 2, "retry_delay": timedelta(seconds=1)},
)
def tutorial_taskflow(notify: str = "ops@example.com"):
    """
    TaskFlow tutorial: extract -> transform -> load, wired through XComArgs.
    TaskFlow 教程：extract -> transform -> load，通过 XComArg 连接。
    """

    @task
    def extract():
        return {"1001": 301.27, "1002": 433.21, "1003": 502.22}

    @task
    def transform(order_data: dict):
        return {"total_order_value": round(sum(order_data.values()), 2)}

    @task
    def load(summary: dict, ds=None, ti=None, log=None):
        ti.xcom_push("total", summary["total_order_value"])
        log.info("[%s] Total order value is: %.2f", ds, summary["total_order_value"])
        return summary["total_order_value"]

    loaded = load(transform(extract()))

    report = EmailOperator(
        task_id="report",
        to="{{ params.notify }}",
        subject="[minidag] tutorial_taskflow {{ ds }}",
        html_content="<p>Run {{ run_id }} finished.</p>",
        retries=0,
    )
    loaded >> report


tutorial_taskflow_dag = tutorial_taskflow()
