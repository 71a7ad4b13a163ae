"""
Email notification utilities for Extension Attribute Sync.

This module sends optional email reports when a bulk run ends with failed users
or when a run aborts.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LISTED_FAILURES = 10


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

        if smtp_port == 465:
            connection = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            connection = smtplib.SMTP(smtp_server, smtp_port)

        # Closed on exit even when a step below fails
        with connection as server:
            if smtp_port != 465 and smtp_tls:
                server.starttls()

            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)

            server.sendmail(email_from, email_to, msg.as_string())

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a run that could not complete.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Extension Attribute Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        "",
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.append("Please check the application logs for more detailed information.")

    return send_email(f"Extension Attribute Sync Alert: {title}", '\n'.join(body_lines), config)


def send_bulk_failure_summary(result, config: Dict[str, Any], source: Optional[str] = None) -> bool:
    """
    Send a summary of a bulk run that finished with failed users.

    Args:
        result: BulkResult of the run
        config: Notification configuration
        source: Input file name for the report

    Returns:
        True if notification sent successfully
    """
    if not result.failed:
        return False

    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Extension Attribute Sync Bulk Report",
        f"Timestamp: {timestamp}",
    ]
    if source:
        body_lines.append(f"Input: {source}")
    body_lines.extend([
        "",
        f"  Succeeded: {result.succeeded}",
        f"  Failed: {result.failed}",
        f"  Total: {result.total}",
        "",
        "Failed users:",
    ])

    failures = result.failures()
    for i, outcome in enumerate(failures[:MAX_LISTED_FAILURES], 1):
        body_lines.append(f"  {i}. {outcome.identifier}: {outcome.error or 'unknown error'}")

    if len(failures) > MAX_LISTED_FAILURES:
        body_lines.append(f"  ... and {len(failures) - MAX_LISTED_FAILURES} more")

    body_lines.extend([
        "",
        "Check the application logs for complete error details.",
    ])

    subject = f"Extension Attribute Sync: {result.failed} of {result.total} updates failed"
    return send_email(subject, '\n'.join(body_lines), config)
