import os
from typing import Dict, Any, Optional
from loguru import logger
from slack_sdk.web import WebClient
from slack_sdk.errors import SlackApiError

SEVERITY_EMOJI = {
    "LOW": ":information_source:",
    "MEDIUM": ":warning:",
    "HIGH": ":rotating_light:",
    "CRITICAL": ":fire:",
}


class SlackNotifier:
    """Slack integration for paging operators about webhook alerts and dead letters."""

    def __init__(self):
        self.token = os.getenv("SLACK_BOT_TOKEN")
        self.default_channel = os.getenv("SLACK_ALERT_CHANNEL", "#webhook-alerts")
        self.client = WebClient(token=self.token) if self.token else None

        if not self.token:
            logger.warning("No Slack token provided, using mock mode")

    def _post(self, message: Dict[str, Any], channel: Optional[str]) -> Optional[str]:
        if self.client is None:
            logger.info(f"Mock mode: would send Slack message: {message['text']}")
            return "mock_timestamp_123"

        target_channel = channel or self.default_channel
        try:
            response = self.client.chat_postMessage(
                channel=target_channel,
                text=message["text"],
                blocks=message["blocks"]
            )
            message_ts = response["ts"]
            logger.info(f"Slack notification sent to {target_channel}: {message_ts}")
            return message_ts
        except SlackApiError as e:
            logger.error(f"Slack notification failed: {e.response.get('error')}")
            return None
        except Exception as e:
            logger.error(f"Slack notification failed: {e}")
            return None

    def send_webhook_alert(self, alert: Dict[str, Any], channel: Optional[str] = None) -> Optional[str]:
        """
        Send a webhook alert to the alert channel.

        Args:
            alert: Stored WebhookAlert
            channel: Slack channel (optional, uses default if not specified)

        Returns:
            Slack message timestamp or None if failed
        """
        return self._post(self._build_alert_message(alert), channel)

    def send_dead_letter_alert(self, event: Dict[str, Any], channel: Optional[str] = None) -> Optional[str]:
        """
        Tell operators an event exhausted its retries and needs manual review.

        Args:
            event: Dead-lettered WebhookEvent
            channel: Slack channel (optional)

        Returns:
            Slack message timestamp or None if failed
        """
        return self._post(self._build_dead_letter_message(event), channel)

    def _build_alert_message(self, alert: Dict[str, Any]) -> Dict[str, Any]:
        severity = alert.get("severity", "HIGH")
        emoji = SEVERITY_EMOJI.get(severity, ":warning:")
        platform = alert.get("platform") or "all platforms"

        text = f"{emoji} {severity} webhook alert ({platform}): {alert.get('message')}"

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"{severity} webhook alert"
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Type:*\n{alert.get('type')}"},
                    {"type": "mrkdwn", "text": f"*Platform:*\n{platform}"},
                    {"type": "mrkdwn", "text": f"*Current value:*\n{alert.get('current_value')}"},
                    {"type": "mrkdwn", "text": f"*Threshold:*\n{alert.get('threshold')}"},
                ]
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"{alert.get('message')}\n_Alert ID: {alert.get('id')}, seen {alert.get('occurrences', 1)}x_"
                }
            }
        ]

        return {"text": text, "blocks": blocks}

    def _build_dead_letter_message(self, event: Dict[str, Any]) -> Dict[str, Any]:
        text = (
            f":skull: Webhook moved to dead letter queue after {event.get('attempts')} attempts: "
            f"{event.get('type')} (ID: {event.get('id')})"
        )

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": "Webhook dead-lettered"
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Type:*\n{event.get('type')}"},
                    {"type": "mrkdwn", "text": f"*Attempts:*\n{event.get('attempts')}"},
                    {"type": "mrkdwn", "text": f"*First received:*\n{event.get('created_at')}"},
                    {"type": "mrkdwn", "text": f"*Event ID:*\n{event.get('id')}"},
                ]
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*Last error:* {event.get('last_error') or 'unknown'}\n*Next Action:* replay via /webhooks/process-retries"
                }
            }
        ]

        return {"text": text, "blocks": blocks}


# Global Slack notifier instance
slack_notifier = SlackNotifier()


def send_webhook_alert(alert: Dict[str, Any], channel: Optional[str] = None) -> Optional[str]:
    """Send a webhook alert using the global Slack notifier."""
    return slack_notifier.send_webhook_alert(alert, channel)


def send_dead_letter_alert(event: Dict[str, Any], channel: Optional[str] = None) -> Optional[str]:
    """Send a dead-letter notice using the global Slack notifier."""
    return slack_notifier.send_dead_letter_alert(event, channel)
