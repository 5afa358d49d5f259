"""
Notification Templates

Jinja2 templates for the two messages the pipeline sends once an order
is paid: the kitchen ticket and the customer receipt. Each template name
maps to a subject, an HTML body and a plain-text body.
"""

from dataclasses import dataclass
from typing import Any

from jinja2 import DictLoader, Environment, select_autoescape

KITCHEN_TICKET = "kitchen_ticket"
PAYMENT_RECEIPT = "payment_receipt"

_TEMPLATES = {
    f"{KITCHEN_TICKET}.subject": "NEW PAID ORDER {{ order.order_number or order.id }} - {{ order.restaurant_name }}",
    f"{KITCHEN_TICKET}.html": """\
<div style="font-family: monospace; max-width: 600px;">
  <h1>Order {{ order.order_number or order.id }}</h1>
  <p>Customer: <strong>{{ order.customer_name }}</strong>{% if order.customer_phone %} ({{ order.customer_phone }}){% endif %}</p>
  <table>
  {% for item in order.items %}
    <tr>
      <td>{{ item.quantity }} x</td>
      <td>{{ item.name }}</td>
      <td>${{ "%.2f"|format(item.total_price) }}</td>
    </tr>
    {% if item.special_instructions %}<tr><td></td><td colspan="2"><em>{{ item.special_instructions }}</em></td></tr>{% endif %}
  {% endfor %}
  </table>
  <p>Subtotal: ${{ "%.2f"|format(order.subtotal) }}<br>
     Tax: ${{ "%.2f"|format(order.tax) }}<br>
     <strong>Total: ${{ "%.2f"|format(order.total) }} (PAID)</strong></p>
</div>
""",
    f"{KITCHEN_TICKET}.text": """\
ORDER {{ order.order_number or order.id }} - PAID
Customer: {{ order.customer_name }}
{% for item in order.items %}{{ item.quantity }} x {{ item.name }}{% if item.special_instructions %} [{{ item.special_instructions }}]{% endif %}
{% endfor %}Total: ${{ "%.2f"|format(order.total) }}
""",
    f"{PAYMENT_RECEIPT}.subject": "Payment received - {{ order.restaurant_name }} order {{ order.order_number or order.id }}",
    f"{PAYMENT_RECEIPT}.html": """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h1 style="color: #ff4757;">Thank you, {{ order.customer_name }}!</h1>
  <p>We received your payment for order <strong>{{ order.order_number or order.id }}</strong>.</p>
  <div style="background: #f8f9fa; padding: 15px; border-radius: 8px; margin: 20px 0;">
  {% for item in order.items %}
    <p>{{ item.quantity }} x {{ item.name }} - ${{ "%.2f"|format(item.total_price) }}</p>
  {% endfor %}
    <p>Total paid: <strong>${{ "%.2f"|format(order.total) }}</strong></p>
    {% if payment_id %}<p>Payment reference: {{ payment_id }}</p>{% endif %}
  </div>
  <p>{{ order.restaurant_name }} has your order.</p>
</div>
""",
    f"{PAYMENT_RECEIPT}.text": """\
Thank you, {{ order.customer_name }}!
Payment received for order {{ order.order_number or order.id }}.
Total paid: ${{ "%.2f"|format(order.total) }}
{% if payment_id %}Payment reference: {{ payment_id }}
{% endif %}""",
}

_env = Environment(
    loader=DictLoader(_TEMPLATES),
    autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
)


@dataclass
class RenderedMessage:
    subject: str
    html: str
    text: str


def render(template: str, data: dict[str, Any]) -> RenderedMessage:
    """
    Render a named template.

    Raises:
        jinja2.TemplateNotFound: Unknown template name
    """
    return RenderedMessage(
        subject=_env.get_template(f"{template}.subject").render(**data).strip(),
        html=_env.get_template(f"{template}.html").render(**data),
        text=_env.get_template(f"{template}.text").render(**data),
    )
