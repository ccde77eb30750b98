from .base import BaseOperator, chain
from .python import PythonOperator, XComArg
from .bash import BashOperator
from .email import EmailOperator
from .empty import EmptyOperator

__all__ = [
    "BaseOperator",
    "chain",
    "PythonOperator",
    "XComArg",
    "BashOperator",
    "EmailOperator",
    "EmptyOperator",
]
