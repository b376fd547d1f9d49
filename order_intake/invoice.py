"""PDF invoice attached to the order confirmation e-mail."""

import io
import os
from datetime import date
from decimal import Decimal
from typing import Any, Mapping

from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from .schemas import OrderOut

SHOP_NAME = os.getenv("SHOP_NAME", "ClassyShop")
CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "S/.")

PAGE_WIDTH, PAGE_HEIGHT = A4
LEFT = 50
RIGHT = PAGE_WIDTH - 45
ROW_HEIGHT = 22
BOTTOM_MARGIN = 80

PAGO_BRANCHES = {"bcp": "BCP", "agente_pe": "Agente PE", "tienda": "Tienda"}


def amount(value: Any) -> Decimal:
    try:
        return Decimal(str(value or 0))
    except ArithmeticError:
        return Decimal(0)


def money(value: Any) -> str:
    return f"{CURRENCY_SYMBOL}{amount(value):.2f}"


def payment_label(payment_type: str, customer: Mapping[str, Any]) -> str:
    normalized = str(payment_type or customer.get("paymentMethod") or "").strip().lower()
    label = "Metodo de Pago: "
    if normalized == "card":
        return label + "Tarjeta"
    if normalized == "yape":
        label += "Yape"
        if customer.get("yapePhone"):
            label += f" ({customer['yapePhone']})"
        return label
    if normalized == "pagoefectivo":
        label += "PagoEfectivo"
        branch = customer.get("pagoBranch")
        if branch:
            label += f" (Punto: {PAGO_BRANCHES.get(branch, branch)})"
        return label
    if normalized == "cash":
        return label + "Efectivo"
    if normalized == "other" and customer.get("paymentMethod"):
        normalized = str(customer["paymentMethod"])
    return label + (normalized or "No especificado")


class PdfInvoiceRenderer:
    """Renders a one-or-more page A4 invoice with reportlab."""

    def render(self, order: OrderOut) -> bytes:
        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=A4)
        pdf.setTitle(f"Pedido {order.id}")

        self._header(pdf)
        self._customer(pdf, order)
        self._table(pdf, order)

        pdf.showPage()
        pdf.save()
        return buffer.getvalue()

    def _header(self, pdf: canvas.Canvas) -> None:
        top = PAGE_HEIGHT - 50
        pdf.setFillColor(HexColor("#000000"))
        pdf.setFont("Helvetica-Bold", 20)
        pdf.drawString(LEFT, top - 20, SHOP_NAME)
        pdf.setFont("Helvetica", 10)
        pdf.drawString(LEFT, top - 35, "Factura de Pedido")
        pdf.drawRightString(RIGHT, top - 35, f"Fecha: {date.today():%d/%m/%Y}")
        pdf.setStrokeColor(HexColor("#cccccc"))
        pdf.setLineWidth(1)
        pdf.line(LEFT, top - 60, RIGHT, top - 60)

    def _customer(self, pdf: canvas.Canvas, order: OrderOut) -> None:
        customer = order.customer_details or {}
        y = PAGE_HEIGHT - 140

        pdf.setFillColor(HexColor("#444444"))
        pdf.setFont("Helvetica-Bold", 14)
        pdf.drawString(LEFT, y, "Facturado a:")
        pdf.drawString(400, y, "Pedido:")

        pdf.setFont("Helvetica", 10)
        for offset, text in enumerate(
            [customer.get("name") or "Cliente", customer.get("email") or "-", customer.get("address") or "-"]
        ):
            pdf.drawString(LEFT, y - 20 - offset * 14, str(text))

        pdf.drawString(400, y - 20, f"Orden #{order.id}")
        pdf.drawString(400, y - 34, f"Fecha: {order.order_date:%d/%m/%Y}")
        pdf.drawString(400, y - 48, payment_label(order.payment_type, customer))

    def _table_header(self, pdf: canvas.Canvas, y: float) -> float:
        pdf.setFillColor(HexColor("#000000"))
        pdf.setFont("Helvetica-Bold", 12)
        pdf.drawString(LEFT, y, "Producto")
        pdf.drawString(300, y, "Cant.")
        pdf.drawRightString(450, y, "Precio Unit.")
        pdf.drawRightString(RIGHT, y, "Total")
        pdf.setStrokeColor(HexColor("#cccccc"))
        pdf.line(LEFT, y - 8, RIGHT, y - 8)
        pdf.setFont("Helvetica", 10)
        pdf.setFillColor(HexColor("#444444"))
        return y - ROW_HEIGHT

    def _table(self, pdf: canvas.Canvas, order: OrderOut) -> None:
        y = self._table_header(pdf, PAGE_HEIGHT - 240)

        for item in order.items:
            if y < BOTTOM_MARGIN:
                pdf.showPage()
                y = self._table_header(pdf, PAGE_HEIGHT - 60)
            quantity = item.get("quantity") or 0
            price = item.get("price", item.get("unitPrice")) or 0
            pdf.drawString(LEFT, y, str(item.get("title") or item.get("name") or "Producto")[:45])
            pdf.drawString(300, y, str(quantity))
            pdf.drawRightString(450, y, money(price))
            pdf.drawRightString(RIGHT, y, money(amount(quantity) * amount(price)))
            y -= ROW_HEIGHT

        pdf.setStrokeColor(HexColor("#cccccc"))
        pdf.line(LEFT, y + 8, RIGHT, y + 8)

        pdf.setFillColor(HexColor("#000000"))
        pdf.setFont("Helvetica-Bold", 16)
        pdf.drawRightString(RIGHT, y - 20, f"Total Pagado: {money(order.total)}")

        pdf.setFillColor(HexColor("#888888"))
        pdf.setFont("Helvetica-Oblique", 10)
        pdf.drawCentredString(PAGE_WIDTH / 2, y - 60, f"Gracias por tu compra en {SHOP_NAME}!")
