"""Reminder message templates.

A template is a JSON string ``{"lines": [...]}``. Each line may carry
``{{token}}`` placeholders which are filled from a subscription.
"""
import json
import logging
import re
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

NOT_FILLED = '未填写'

DEFAULT_TEMPLATE_LINES = [
    '🔔 续订提醒通知',
    '',
    '📌 订阅 {{name}} 即将续费',
    '',
    '📅 付款日期：{{nextBillingDate}}',
    '',
    '🔒 订阅金额：{{price}} {{currency}}',
    '💳 支付方式：{{paymentMethod}}',
    '',
    '⚠️ 请及时续订以避免服务中断。',
]

# Built-in default shipped by earlier releases; migrated on load
PREVIOUS_TEMPLATE_LINES = [
    '🔔 续订提醒通知',
    '',
    '📌 订阅 {{name}} 即将续费',
    '',
    '📅 付款日期：{{nextBillingDate}}',
    '🔒 订阅金额：{{price}} {{currency}}',
    '💳 支付方式：{{paymentMethod}}',
    '',
    '⚠️ 请及时续订以避免服务中断。',
]


def dump_template(lines: List[Any]) -> str:
    """Serialize template lines the way the UI stores them."""
    return json.dumps({'lines': lines}, ensure_ascii=False, indent=2)


DEFAULT_TEMPLATE = dump_template(DEFAULT_TEMPLATE_LINES)
PREVIOUS_TEMPLATE = dump_template(PREVIOUS_TEMPLATE_LINES)

TOKEN_RE = re.compile(r'{{\s*([a-zA-Z]+)\s*}}')
NAME_TOKEN = '{{name}}'


def _field(attr: str, placeholder: str) -> Callable[[Any], str]:
    def getter(subscription: Any) -> str:
        if isinstance(subscription, dict):
            value = subscription.get(attr)
        else:
            value = getattr(subscription, attr, None)
        if value is None:
            return placeholder
        if isinstance(value, Decimal):
            return format(value.normalize(), 'f')
        return str(value)
    return getter


TOKEN_REPLACERS: Dict[str, Callable[[Any], str]] = {
    'name': _field('name', NOT_FILLED),
    'nextBillingDate': _field('next_billing_date', NOT_FILLED),
    'price': _field('price', ''),
    'currency': _field('currency', ''),
    'paymentMethod': _field('payment_method', NOT_FILLED),
}

GENERIC_NAME_PATTERNS = [
    re.compile(r'订阅\s*(.+?)\s*即将续费'),
    re.compile(r'Subscription\s*(.+?)\s*(?:is\s*)?(?:about\s+to|will)\s+renew', re.IGNORECASE),
]


def parse_template_lines(template: Optional[str]) -> Optional[List[Any]]:
    """
    Parse a template string.

    Returns:
        The non-empty ``lines`` list, or None when the template is invalid
    """
    try:
        parsed = json.loads(template or '')
    except (TypeError, ValueError):
        return None

    if not isinstance(parsed, dict):
        return None
    lines = parsed.get('lines')
    if not isinstance(lines, list) or not lines:
        return None
    return lines


def normalize_template(template: Optional[str]) -> str:
    """Validate a user supplied template, replacing it with the default if broken."""
    lines = parse_template_lines(template)
    if lines is None:
        return DEFAULT_TEMPLATE
    return dump_template(lines)


def _render_line(line: Any, subscription: Any) -> str:
    if not isinstance(line, str):
        return ''

    def replace(match: re.Match) -> str:
        replacer = TOKEN_REPLACERS.get(match.group(1))
        return replacer(subscription) if replacer else ''

    return TOKEN_RE.sub(replace, line)


def render_template(template: Optional[str], subscription: Any) -> str:
    """
    Render a reminder message.

    Args:
        template: Template JSON string; invalid templates use the default
        subscription: Subscription model or a dict with snake_case keys

    Returns:
        Message text, blank lines removed
    """
    lines = parse_template_lines(template)
    if lines is None:
        lines = DEFAULT_TEMPLATE_LINES

    rendered = (_render_line(line, subscription) for line in lines)
    return '\n'.join(line for line in rendered if line)


def extract_name_from_rendered(template: Optional[str], text: Optional[str]) -> Optional[str]:
    """
    Recover the subscription name from a message rendered with a template.

    Every template line holding ``{{name}}`` becomes a pattern of its
    literal prefix and suffix; the first message line it matches gives
    the name. Generic renewal phrases are tried next.
    Other tokens on the name line are matched literally, and the generic
    phrases only cover Chinese and English wording.

    Args:
        template: Template the message was rendered with
        text: Rendered message text

    Returns:
        Extracted name, or None
    """
    if not text:
        return None

    template_lines = parse_template_lines(template) or DEFAULT_TEMPLATE_LINES
    message_lines = text.split('\n')

    for template_line in template_lines:
        if not isinstance(template_line, str) or NAME_TOKEN not in template_line:
            continue
        prefix, _, suffix = template_line.partition(NAME_TOKEN)
        pattern = re.compile(f'^{re.escape(prefix)}(.+?){re.escape(suffix)}$')
        for message_line in message_lines:
            match = pattern.match(message_line)
            if match and match.group(1).strip():
                return match.group(1).strip()

    flat_text = re.sub(r'\s+', ' ', text).strip()
    for pattern in GENERIC_NAME_PATTERNS:
        match = pattern.search(flat_text)
        if match and match.group(1).strip():
            return match.group(1).strip()

    logger.debug("No subscription name found in message text")
    return None
