"""
Update and approval notifications for tagwatch, sent to ntfy topics and
generic HTTP webhooks.

A send that fails is logged and retried with exponential backoff until the
attempts run out or the stop event is set; callers never see the error.
"""

import json
import logging
import string
import threading
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds

_NTFY_PRIORITIES = {'min', 'low', 'default', 'high', 'urgent'}

EVENT_UPDATE_APPLIED = 'update_applied'
EVENT_APPROVAL_REQUIRED = 'approval_required'

DEFAULT_ATTEMPTS = 3
MAX_BACKOFF = 30.0  # seconds


def next_backoff(prev: float, maximum: float = MAX_BACKOFF) -> float:
    """1s first, then doubling, capped at `maximum`."""
    if prev <= 0:
        return min(1.0, maximum)
    return min(prev * 2, maximum)


def _build_payload(image: str, old_version: str, new_version: str,
                   event: str, digest: str, votes_required: int) -> Dict[str, Any]:
    """Return the standard dict passed to every sender."""
    return {
        'event': event,
        'image': image,
        'old_version': old_version,
        'new_version': new_version,
        'digest': digest,
        'votes_required': votes_required,
    }


def _merge_headers(base: Dict[str, str], cfg: Dict[str, Any]) -> Dict[str, str]:
    merged = dict(base)
    merged.update({str(k): str(v) for k, v in (cfg.get('headers') or {}).items()})
    return merged


def _deliver(channel: str, method: str, url: str, data: bytes,
             headers: Dict[str, str], image: str) -> bool:
    """Perform one HTTP request for a channel; True on a 2xx response."""
    try:
        response = requests.request(method, url, data=data, headers=headers,
                                    timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning("%s: could not deliver notification for %s: %s", channel, image, e)
        return False
    logger.info("%s: delivered notification for %s", channel, image)
    return True


def _ntfy_text(payload: Dict[str, Any]):
    """Return the (title, body) pair shown by ntfy clients."""
    image = payload['image']
    old_v, new_v = payload['old_version'], payload['new_version']
    if payload['event'] == EVENT_APPROVAL_REQUIRED:
        votes = payload.get('votes_required', 1)
        return f"tagwatch: {image} awaiting approval", f"{old_v} → {new_v} needs {votes} approval(s)."
    if old_v == new_v:
        return f"tagwatch: {image} rebuilt", f"tag {new_v} now points at a new digest."
    return f"tagwatch: {image} updated", f"{old_v} → {new_v}"


def send_ntfy(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """Publish to an ntfy topic.

    cfg keys: url (full topic URL, required), priority (min..urgent, falls
    back to default), headers (extra request headers, e.g. Authorization).
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("ntfy: topic url missing, nothing sent")
        return False

    title, body = _ntfy_text(payload)
    priority = cfg.get('priority', 'default')
    headers = _merge_headers({
        'Title': title,
        'Priority': priority if priority in _NTFY_PRIORITIES else 'default',
        'Tags': 'package',
        'Content-Type': 'text/plain',
    }, cfg)
    return _deliver('ntfy', 'POST', url, body.encode('utf-8'), headers, payload['image'])


def _render_webhook_body(template: Optional[str], payload: Dict[str, Any]) -> str:
    if not template:
        return json.dumps(payload)
    try:
        return string.Template(template).safe_substitute(
            {key: str(value) for key, value in payload.items()})
    except ValueError as e:
        logger.warning("webhook: bad body_template (%s), falling back to JSON payload", e)
        return json.dumps(payload)


def send_webhook(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """Send the payload to an arbitrary HTTP endpoint.

    cfg keys:
        url            target URL (required)
        method         POST unless given, e.g. PUT
        headers        extra request headers
        body_template  string.Template rendered with the payload fields
                       ($image, $old_version, $new_version, $event, $digest,
                       $votes_required); the JSON payload is sent without one.
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("webhook: url missing, nothing sent")
        return False

    method = (cfg.get('method') or 'POST').upper()
    headers = _merge_headers({'Content-Type': 'application/json'}, cfg)
    body = _render_webhook_body(cfg.get('body_template'), payload)
    return _deliver('webhook', method, url, body.encode('utf-8'), headers, payload['image'])


def send_with_retry(sender: Callable[[Dict[str, Any], Dict[str, Any]], bool],
                    cfg: Dict[str, Any], payload: Dict[str, Any],
                    attempts: int = DEFAULT_ATTEMPTS,
                    stop_event: Optional[threading.Event] = None) -> bool:
    """Call sender until it succeeds, waiting next_backoff() between attempts.

    Returns early, without success, once stop_event is set.
    """
    stop_event = stop_event or threading.Event()
    delay = 0.0
    for attempt in range(1, attempts + 1):
        if sender(cfg, payload):
            return True
        if attempt == attempts:
            break
        delay = next_backoff(delay)
        logger.debug("notification attempt %d failed, retrying in %.0fs", attempt, delay)
        if stop_event.wait(delay):
            logger.info("notification retries cancelled for %s", payload['image'])
            break
    return False


_CHANNELS = (
    ('ntfy', send_ntfy),
    ('webhook', send_webhook),
)


def send_notifications(notif_cfg: Optional[Dict[str, Any]],
                       image: str, old_version: str, new_version: str,
                       event: str, digest: str = '', votes_required: int = 0,
                       stop_event: Optional[threading.Event] = None) -> None:
    """Fan a notification out to every channel configured under notif_cfg.

    A missing or empty notif_cfg is a no-op. Nothing raised by a sender
    escapes this function.
    """
    if not notif_cfg:
        return

    payload = _build_payload(image, old_version, new_version, event, digest, votes_required)
    attempts = int(notif_cfg.get('retries', DEFAULT_ATTEMPTS))

    for channel, sender in _CHANNELS:
        channel_cfg = notif_cfg.get(channel)
        if not channel_cfg or not channel_cfg.get('url'):
            continue
        try:
            send_with_retry(sender, channel_cfg, payload, attempts, stop_event)
        except Exception:
            logger.exception("%s: notification for %s failed unexpectedly", channel, image)
