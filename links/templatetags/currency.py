from django import template

register = template.Library()


@register.filter
def cop(value):
    """Format whole pesos the way the dashboard shows them: ``$50,000``."""
    try:
        return f"${int(value):,}"
    except (TypeError, ValueError):
        return value
