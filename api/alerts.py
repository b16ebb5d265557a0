import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from config import config


logger = logging.getLogger(__name__)


class AlertWebhook:
    """Forwards accepted signals to an outbound webhook.

    Registered as a signal-store subscriber. Without a configured URL every
    alert is written to the log instead.
    """

    def __init__(self, url: Optional[str] = None, timeout_s: float = 5.0):
        if url is None:
            url = config.monitoring.get('alert_webhook')
        # Treat empty or placeholder URLs as disabled
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self.timeout_s = timeout_s

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Dict = None) -> bool:
        if not self.enabled:
            logger.warning(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return False

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {},
        }

        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.webhook_url,
                json=payload,
                headers={'Content-Type': 'application/json'},
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as response:
                if response.status >= 300:
                    logger.error("[Alert] Webhook failed with status %s", response.status)
                    return False
        return True

    async def signal_alert(self, signal: Any) -> bool:
        data = signal.to_dict() if hasattr(signal, 'to_dict') else dict(signal)
        return await self.send_alert(
            'signal',
            f"{data['signal_type']} {data['symbol']} {data['timeframe']} on {data['exchange']}",
            'info',
            {
                'signal_id': data['id'],
                'description': data.get('description'),
                'price': data.get('price'),
                'timestamp': data.get('timestamp'),
            },
        )

    async def __call__(self, signal: Any) -> bool:
        return await self.signal_alert(signal)
