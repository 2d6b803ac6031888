import os
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from twilio.rest import Client
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# --- Email Configuration ---
SMTP_SERVER = os.getenv("SMTP_SERVER")
SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
EMAIL_SENDER = os.getenv("EMAIL_SENDER")

# --- Twilio Configuration ---
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")

PLATFORM_NAME = os.getenv("PLATFORM_NAME", "Marketplace")


def send_email(to_email: str, subject: str, body_html: str, body_text: Optional[str] = None) -> bool:
    """Sends an email using SMTP."""
    if not all([SMTP_SERVER, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, EMAIL_SENDER]):
        logger.error("SMTP settings are not fully configured. Cannot send email.")
        return False

    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = EMAIL_SENDER
    message["To"] = to_email
    if body_text:
        message.attach(MIMEText(body_text, "plain"))
    message.attach(MIMEText(body_html, "html"))

    try:
        with smtplib.SMTP(SMTP_SERVER, SMTP_PORT) as server:
            server.starttls()
            server.login(SMTP_USER, SMTP_PASSWORD)
            server.sendmail(EMAIL_SENDER, to_email, message.as_string())
        logger.info(f"Email sent successfully to {to_email}")
        return True
    except Exception as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


def send_sms(to_phone_number: str, body: str) -> bool:
    """Sends an SMS using Twilio."""
    if not all([TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER]):
        logger.error("Twilio settings are not fully configured. Cannot send SMS.")
        return False

    try:
        client = Client(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN)
        message = client.messages.create(
            body=body,
            from_=TWILIO_PHONE_NUMBER,
            to=to_phone_number
        )
        logger.info(f"SMS sent successfully to {to_phone_number}, SID: {message.sid}")
        return True
    except Exception as e:
        logger.error(f"Failed to send SMS to {to_phone_number}: {e}")
        return False


# In-app titles and messages per order status
STATUS_MESSAGES = {
    "pending": ("Order received", "Your order {order_number} has been received and is awaiting confirmation."),
    "confirmed": ("Order confirmed", "Your order {order_number} has been confirmed by the vendor."),
    "preparing": ("Order being prepared", "Your order {order_number} is being prepared."),
    "ready_for_pickup": ("Order ready", "Your order {order_number} is ready and waiting for a driver."),
    "in_transit": ("Order on the way", "Your order {order_number} is on its way."),
    "delivered": ("Order delivered", "Your order {order_number} has been delivered. Enjoy!"),
    "cancelled": ("Order cancelled", "Your order {order_number} has been cancelled."),
}


def get_status_message(status: str, order_number: str) -> tuple[str, str]:
    title, template = STATUS_MESSAGES.get(status, ("Order update", "Your order {order_number} status is now " + status + "."))
    return title, template.format(order_number=order_number)


def _format_amount(amount, currency: str) -> str:
    return f"{amount:,.0f} {currency}" if amount is not None else "N/A"


def _items_rows(order_data: dict) -> str:
    rows = ""
    for item in order_data.get("items", []):
        rows += f"""
            <tr>
                <td>{item['name']}</td>
                <td>{item['quantity']}</td>
                <td>{_format_amount(item['total_price'], order_data['currency'])}</td>
            </tr>
        """
    return rows


# Email Templates
def get_order_confirmation_email(order_data: dict) -> tuple[str, str, str]:
    """Order confirmation sent to the customer"""
    currency = order_data["currency"]
    subject = f"Order Confirmed - {order_data['order_number']}"

    html = f"""
    <html>
    <body>
        <h2>Thank you for your order!</h2>
        <p>Hello {order_data.get('customer_name') or ''},</p>
        <p>Your order from <strong>{order_data.get('vendor_name', 'our vendor')}</strong> has been placed.</p>

        <div style="background-color: #f5f5f5; padding: 15px; border-radius: 5px;">
            <h3>Order Details:</h3>
            <p><strong>Order Number:</strong> {order_data['order_number']}</p>
            <table>
                <tr><th>Product</th><th>Qty</th><th>Total</th></tr>
                {_items_rows(order_data)}
            </table>
            <p><strong>Subtotal:</strong> {_format_amount(order_data['subtotal'], currency)}</p>
            <p><strong>Delivery Fee:</strong> {_format_amount(order_data['delivery_fee'], currency)}</p>
            <p><strong>Total:</strong> {_format_amount(order_data['total_amount'], currency)}</p>
            <p><strong>Payment:</strong> {order_data['payment_method'].replace('_', ' ').title()}</p>
        </div>

        <p>Best regards,<br>{PLATFORM_NAME} Team</p>
    </body>
    </html>
    """

    text = (
        f"Order {order_data['order_number']} placed with {order_data.get('vendor_name', 'our vendor')}. "
        f"Total: {_format_amount(order_data['total_amount'], currency)}."
    )
    return subject, html, text


def get_new_order_email(order_data: dict) -> tuple[str, str, str]:
    """New order alert sent to the vendor"""
    currency = order_data["currency"]
    subject = f"New Order Received - {order_data['order_number']}"

    html = f"""
    <html>
    <body>
        <h2>New order received!</h2>
        <p>Hello {order_data.get('vendor_name', '')},</p>
        <p>A new order has been placed by {order_data.get('customer_name') or 'a customer'}.</p>

        <div style="background-color: #f5f5f5; padding: 15px; border-radius: 5px;">
            <p><strong>Order Number:</strong> {order_data['order_number']}</p>
            <table>
                <tr><th>Product</th><th>Qty</th><th>Total</th></tr>
                {_items_rows(order_data)}
            </table>
            <p><strong>Subtotal:</strong> {_format_amount(order_data['subtotal'], currency)}</p>
            <p><strong>Commission:</strong> {_format_amount(order_data['commission_amount'], currency)}</p>
            <p><strong>Your Earnings:</strong> {_format_amount(order_data['vendor_earnings'], currency)}</p>
        </div>

        <p>Please confirm the order as soon as possible.</p>
        <p>Best regards,<br>{PLATFORM_NAME} Team</p>
    </body>
    </html>
    """

    text = (
        f"New order {order_data['order_number']}: "
        f"{_format_amount(order_data['subtotal'], currency)}. Please confirm it."
    )
    return subject, html, text


def get_status_update_email(order_data: dict, status: str, message: Optional[str] = None) -> tuple[str, str, str]:
    """Status change sent to the customer"""
    title, default_message = get_status_message(status, order_data["order_number"])
    subject = f"{title} - {order_data['order_number']}"
    extra = f"<p>{message}</p>" if message else ""

    html = f"""
    <html>
    <body>
        <h2>{title}</h2>
        <p>{default_message}</p>
        {extra}
        <p>Best regards,<br>{PLATFORM_NAME} Team</p>
    </body>
    </html>
    """

    text = f"{default_message} {message}" if message else default_message
    return subject, html, text


def get_driver_assigned_email(order_data: dict, driver_data: dict) -> tuple[str, str, str]:
    """Driver assignment sent to the customer"""
    subject = f"Driver Assigned - {order_data['order_number']}"
    vehicle = " ".join(
        part for part in [driver_data.get("vehicle_color"), driver_data.get("vehicle_type")] if part
    )

    html = f"""
    <html>
    <body>
        <h2>Your order is on its way!</h2>
        <p>{driver_data.get('name') or 'A driver'} is delivering your order {order_data['order_number']}.</p>
        <div style="background-color: #f5f5f5; padding: 15px; border-radius: 5px;">
            <p><strong>Vehicle:</strong> {vehicle or 'N/A'}</p>
            <p><strong>Plate:</strong> {driver_data.get('vehicle_plate') or 'N/A'}</p>
            <p><strong>Phone:</strong> {driver_data.get('phone') or 'N/A'}</p>
        </div>
        <p>Best regards,<br>{PLATFORM_NAME} Team</p>
    </body>
    </html>
    """

    text = f"{driver_data.get('name') or 'A driver'} is delivering your order {order_data['order_number']}."
    return subject, html, text


def get_low_stock_email(vendor_name: str, products: list) -> tuple[str, str, str]:
    """Low stock alert sent to the vendor"""
    subject = f"Low Stock Alert - {len(products)} product(s)"

    rows = ""
    for product in products:
        rows += f"""
            <tr>
                <td>{product['name']}</td>
                <td>{product['quantity']}</td>
                <td>{product['threshold']}</td>
            </tr>
        """

    html = f"""
    <html>
    <body>
        <h2>Low stock alert</h2>
        <p>Hello {vendor_name},</p>
        <p>The following products are running low:</p>
        <table>
            <tr><th>Product</th><th>Remaining</th><th>Threshold</th></tr>
            {rows}
        </table>
        <p>Best regards,<br>{PLATFORM_NAME} Team</p>
    </body>
    </html>
    """

    text = "Low stock: " + ", ".join(f"{product['name']} ({product['quantity']} left)" for product in products)
    return subject, html, text


# SMS Templates
def get_order_confirmation_sms(order_data: dict) -> str:
    return (
        f"{PLATFORM_NAME}: order {order_data['order_number']} placed. "
        f"Total {_format_amount(order_data['total_amount'], order_data['currency'])}."
    )


def get_new_order_sms(order_data: dict) -> str:
    return (
        f"{PLATFORM_NAME}: new order {order_data['order_number']} "
        f"({_format_amount(order_data['subtotal'], order_data['currency'])}). Please confirm."
    )


def get_status_update_sms(order_data: dict, status: str, message: Optional[str] = None) -> str:
    _, default_message = get_status_message(status, order_data["order_number"])
    return f"{PLATFORM_NAME}: {default_message}" + (f" {message}" if message else "")


def get_driver_assigned_sms(order_data: dict, driver_data: dict) -> str:
    plate = driver_data.get("vehicle_plate")
    suffix = f" ({plate})" if plate else ""
    return f"{PLATFORM_NAME}: {driver_data.get('name') or 'A driver'}{suffix} is delivering order {order_data['order_number']}."


def get_low_stock_sms(products: list) -> str:
    names = ", ".join(f"{product['name']} ({product['quantity']})" for product in products)
    return f"{PLATFORM_NAME}: low stock on {names}."
