from django import template
from django.conf import settings
from django.utils.safestring import mark_safe

from chat.formatting import format_message

register = template.Library()


@register.filter(name="chat_format")
def chat_format(value):
    """Render raw message text with the chat markdown subset."""
    return mark_safe(format_message(value or "", escape=settings.CHAT_ESCAPE_HTML))
