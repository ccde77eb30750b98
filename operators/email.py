"""
Email Operator - Sends an email through the configured SMTP server.
邮件算子 —— 通过配置的 SMTP 服务器发送邮件。
"""

from __future__ import annotations

import smtplib
from email.message import EmailMessage
from typing import Any

import config
from operators.base import BaseOperator


def _as_list(value: str | list[str] | None) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        # 支持 "a@x.com, b@x.com" 或 "a@x.com;b@x.com"
        return [v.strip() for v in value.replace(";", ",").split(",") if v.strip()]
    return list(value)


class EmailOperator(BaseOperator):
    """
    Send an HTML email; `subject` and `html_content` are templated.
    发送 HTML 邮件，`subject` 与 `html_content` 支持模板渲染。
    """

    template_fields = ("to", "subject", "html_content")

    def __init__(
        self,
        task_id: str,
        to: str | list[str],
        subject: str,
        html_content: str,
        cc: str | list[str] | None = None,
        bcc: str | list[str] | None = None,
        mail_from: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(task_id=task_id, **kwargs)
        if not _as_list(to):
            raise ValueError(f"Task '{task_id}': at least one recipient is required")
        self.to = to
        self.subject = subject
        self.html_content = html_content
        self.cc = cc
        self.bcc = bcc
        self.mail_from = mail_from or config.SMTP_MAIL_FROM

    def build_message(self, context: dict[str, Any]) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.mail_from
        msg["To"] = ", ".join(_as_list(self.render_template(self.to, context)))
        if self.cc:
            msg["Cc"] = ", ".join(_as_list(self.cc))
        msg["Subject"] = self.render_template(self.subject, context)
        html = self.render_template(self.html_content, context)
        msg.set_content("This message requires an HTML-capable mail client.")
        msg.add_alternative(html, subtype="html")
        return msg

    def execute(self, context: dict[str, Any]) -> Any:
        log = context["log"]
        msg = self.build_message(context)
        recipients = _as_list(msg["To"]) + _as_list(self.cc) + _as_list(self.bcc)

        log.info("Sending email to %s via %s:%d", recipients, config.SMTP_HOST, config.SMTP_PORT)
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=config.SMTP_TIMEOUT) as smtp:
            if config.SMTP_STARTTLS:
                smtp.starttls()
            if config.SMTP_USER:
                smtp.login(config.SMTP_USER, config.SMTP_PASSWORD)
            smtp.send_message(msg, from_addr=self.mail_from, to_addrs=recipients)
        log.info("Email sent: %s", msg["Subject"])
        return None
