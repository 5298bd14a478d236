"""Receipt generation and payment notification, each at most once per transaction."""

import os
import uuid
import base64
import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, List, Tuple

import httpx
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer

from .database.models import Fee, Student, Transaction
from .errors import NotificationError
from .store import TransactionStore, SideEffectFlag

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_FROM_EMAIL = "onboarding@resend.dev"


def format_amount(amount: int, currency: str = "INR") -> str:
    """Format minor units for display, e.g. ``INR 20,000.00``."""
    return f"{currency} {amount / 100:,.2f}"


class ArtifactRenderer(ABC):
    """Renders a payment record to a file and returns its path."""

    @abstractmethod
    async def render(self, transaction: Transaction, student: Student, fee: Fee) -> str:
        raise NotImplementedError


class Notifier(ABC):
    """Delivers a message to a student, optionally with an attachment."""

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        attachment_path: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


def receipt_sections(
    transaction: Transaction,
    student: Student,
    fee: Fee,
) -> List[Tuple[str, List[Tuple[str, str]]]]:
    """Headed label/value rows printed on a receipt."""
    currency = transaction.currency
    breakdown = [
        (component["name"], format_amount(component["amount"], currency))
        for component in fee.components
    ]
    breakdown.append(("Total", format_amount(fee.total_amount, currency)))
    return [
        ("Student Information", [
            ("Name", student.name),
            ("Roll Number", student.roll_number),
            ("Class", f"{student.class_name or '-'} - Section: {student.section or '-'}"),
            ("Email", student.email),
        ]),
        ("Payment Details", [
            ("Order ID", transaction.order_id),
            ("Payment ID", transaction.payment_id or "N/A"),
            ("Payment Method", transaction.payment_method or "Online"),
            ("Payment Status", transaction.status.upper()),
        ]),
        (f"Fee Breakdown ({fee.academic_year})", breakdown),
    ]


class PdfReceiptRenderer(ArtifactRenderer):
    """Writes ``receipt_{order_id}.pdf`` under RECEIPTS_DIR."""

    def __init__(self, output_dir: Optional[str] = None):
        self.output_dir = Path(output_dir or os.getenv("RECEIPTS_DIR", "./receipts"))

    def _rows_table(self, rows: List[Tuple[str, str]], bold_last: bool = False) -> Table:
        table = Table([[f"{label}:", value] for label, value in rows], colWidths=[150, 330])
        style = [
            ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 10),
            ('TEXTCOLOR', (0, 0), (-1, -1), colors.HexColor('#333333')),
            ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 4),
        ]
        if bold_last:
            style.extend([
                ('FONTNAME', (0, -1), (-1, -1), 'Helvetica-Bold'),
                ('LINEABOVE', (0, -1), (-1, -1), 0.5, colors.black),
            ])
        table.setStyle(TableStyle(style))
        return table

    def _story(
        self,
        transaction: Transaction,
        sections: List[Tuple[str, List[Tuple[str, str]]]],
    ) -> list:
        styles = getSampleStyleSheet()
        title_style = ParagraphStyle(
            'ReceiptTitle',
            parent=styles['Heading1'],
            fontSize=22,
            textColor=colors.HexColor('#0066cc'),
            alignment=TA_CENTER,
            spaceAfter=6,
        )
        subtitle_style = ParagraphStyle(
            'ReceiptSubtitle',
            parent=styles['Normal'],
            alignment=TA_CENTER,
            spaceAfter=18,
        )
        footer_style = ParagraphStyle(
            'ReceiptFooter',
            parent=styles['Normal'],
            fontSize=9,
            textColor=colors.HexColor('#666666'),
            alignment=TA_CENTER,
        )

        created = transaction.created_at.strftime("%d %B %Y") if transaction.created_at else "N/A"
        header = Table(
            [[f"Receipt No: {transaction.order_id}", f"Date: {created}"]],
            colWidths=[240, 240],
        )
        header.setStyle(TableStyle([
            ('FONTSIZE', (0, 0), (-1, -1), 10),
            ('TEXTCOLOR', (0, 0), (-1, -1), colors.HexColor('#666666')),
            ('ALIGN', (1, 0), (1, 0), 'RIGHT'),
            ('LINEBELOW', (0, 0), (-1, 0), 1, colors.black),
        ]))

        elements = [
            Paragraph('SCHOOL FEE PAYMENT RECEIPT', title_style),
            Paragraph('School Fee Management Portal', subtitle_style),
            header,
            Spacer(1, 16),
        ]
        for index, (heading, rows) in enumerate(sections):
            elements.append(Paragraph(heading, styles['Heading3']))
            elements.append(self._rows_table(rows, bold_last=index == len(sections) - 1))
            elements.append(Spacer(1, 12))

        total = Table(
            [["Total Amount Paid:", format_amount(transaction.amount, transaction.currency)]],
            colWidths=[150, 330],
        )
        total.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (-1, -1), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (0, 0), 12),
            ('FONTSIZE', (1, 0), (1, 0), 14),
            ('TEXTCOLOR', (1, 0), (1, 0), colors.HexColor('#0066cc')),
            ('LINEABOVE', (0, 0), (-1, 0), 1, colors.black),
            ('TOPPADDING', (0, 0), (-1, -1), 8),
        ]))
        elements.extend([
            total,
            Spacer(1, 30),
            Paragraph('This is a computer-generated receipt and does not require a signature.', footer_style),
            Paragraph('Thank you for your payment!', footer_style),
            Spacer(1, 40),
            Paragraph('_________________________', styles['Normal']),
            Paragraph('Authorized Signatory', styles['Normal']),
        ])
        return elements

    def _write(self, path: Path, elements: list) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        # Each render writes a private file and swaps it in whole
        partial = path.with_name(f".{path.name}.{uuid.uuid4().hex}.part")
        try:
            doc = SimpleDocTemplate(
                str(partial),
                pagesize=A4,
                leftMargin=50,
                rightMargin=50,
                topMargin=50,
                bottomMargin=50,
                title=f"Receipt {path.stem}",
            )
            doc.build(elements)
            os.replace(partial, path)
        finally:
            if partial.exists():
                partial.unlink()

    async def render(self, transaction: Transaction, student: Student, fee: Fee) -> str:
        path = self.output_dir / f"receipt_{transaction.order_id}.pdf"
        elements = self._story(transaction, receipt_sections(transaction, student, fee))
        await asyncio.to_thread(self._write, path, elements)
        return str(path)


class LoggingNotifier(Notifier):
    """Notifier used when no delivery service is configured."""

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        attachment_path: Optional[str] = None,
    ) -> None:
        logger.info(f"Notification to {to}: {subject} (attachment: {attachment_path or 'none'})")


class ResendNotifier(Notifier):
    """Sends email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._api_key = api_key or os.getenv("RESEND_API_KEY")
        if not self._api_key:
            raise ValueError(
                "RESEND_API_KEY must be provided either as argument or environment variable"
            )
        self.from_email = from_email or os.getenv("RESEND_FROM_EMAIL", DEFAULT_FROM_EMAIL)
        self._client = http_client or httpx.AsyncClient(timeout=10.0)

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        attachment_path: Optional[str] = None,
    ) -> None:
        message = {
            "from": self.from_email,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if attachment_path and os.path.exists(attachment_path):
            content = await asyncio.to_thread(Path(attachment_path).read_bytes)
            message["attachments"] = [{
                "filename": os.path.basename(attachment_path),
                "content": base64.b64encode(content).decode(),
            }]

        try:
            response = await self._client.post(
                RESEND_API_URL,
                json=message,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as e:
            raise NotificationError(f"Failed to reach notification service: {type(e).__name__}") from e
        if response.status_code >= 400:
            raise NotificationError(
                f"Notification service rejected message ({response.status_code})"
            )

    async def aclose(self) -> None:
        await self._client.aclose()


def get_notifier() -> Notifier:
    """Resend when RESEND_API_KEY is set, otherwise log only."""
    if os.getenv("RESEND_API_KEY"):
        return ResendNotifier()
    logger.warning("RESEND_API_KEY not set; notifications will only be logged")
    return LoggingNotifier()


def build_receipt_message(transaction: Transaction, student: Student) -> str:
    paid_on = transaction.updated_at or transaction.created_at
    return (
        f"<h2>Hello {student.name},</h2>"
        "<p>Your payment has been successfully processed!</p>"
        f"<p><strong>Order ID:</strong> {transaction.order_id}</p>"
        f"<p><strong>Amount Paid:</strong> {format_amount(transaction.amount, transaction.currency)}</p>"
        f"<p><strong>Payment Date:</strong> {paid_on.strftime('%d %b %Y, %H:%M UTC') if paid_on else 'N/A'}</p>"
        "<p>Please find your receipt attached to this email.</p>"
    )


class SideEffectDispatcher:
    """
    Fires the post-payment side effects for a transaction.

    Each effect is guarded by a one-shot flag claimed with an atomic
    conditional update, so concurrent runs fire it at most once. A claim
    whose effect fails is released for a later run to retry.
    """

    def __init__(
        self,
        store: TransactionStore,
        renderer: ArtifactRenderer,
        notifier: Notifier,
    ):
        self.store = store
        self.renderer = renderer
        self.notifier = notifier

    async def render_artifact(self, transaction: Transaction, student: Student, fee: Fee) -> str:
        """Render unconditionally and record the path. Used when a stored file has gone missing."""
        path = await self.renderer.render(transaction, student, fee)
        await self.store.set_receipt_path(transaction.order_id, path)
        return path

    async def ensure_artifact(
        self,
        transaction: Transaction,
        student: Student,
        fee: Fee,
    ) -> Optional[str]:
        """Generate the receipt once.

        Returns:
            The receipt path. None when another run holds the claim and has
            not stored its path yet.
        """
        order_id = transaction.order_id
        if not await self.store.claim_flag(order_id, SideEffectFlag.RECEIPT_GENERATED):
            current = await self.store.find_by_order_id(order_id)
            return current.receipt_path

        try:
            path = await self.render_artifact(transaction, student, fee)
        except BaseException:
            # Cancellation included: a claim left set with no path is never retried
            await self.store.release_flag(order_id, SideEffectFlag.RECEIPT_GENERATED)
            raise
        logger.info(f"Generated receipt for {order_id} at {path}")
        return path

    async def _attachment_for(self, transaction: Transaction, student: Student, fee: Fee) -> Optional[str]:
        try:
            return await self.render_artifact(transaction, student, fee)
        except Exception:
            logger.exception(f"Receipt generation failed for {transaction.order_id}; sending without it")
            return None

    async def ensure_notification(
        self,
        transaction: Transaction,
        student: Student,
        path: Optional[str],
        fee: Optional[Fee] = None,
    ) -> bool:
        """Send the payment notification once.

        Args:
            path: Receipt to attach.
            fee: When given and ``path`` is empty, the winner of the claim
                renders the receipt itself so that it can be attached.

        Returns:
            True if this call sent it, False if it had already been claimed.
        """
        order_id = transaction.order_id
        if not await self.store.claim_flag(order_id, SideEffectFlag.NOTIFICATION_SENT):
            return False

        try:
            if not path and fee is not None:
                path = await self._attachment_for(transaction, student, fee)
            await self.notifier.send(
                to=student.email,
                subject="Payment Receipt - School Fee Portal",
                html=build_receipt_message(transaction, student),
                attachment_path=path,
            )
        except BaseException:
            await self.store.release_flag(order_id, SideEffectFlag.NOTIFICATION_SENT)
            raise
        logger.info(f"Sent payment notification for {order_id} to {student.email}")
        return True

    async def dispatch(self, transaction: Transaction, student: Student, fee: Fee) -> None:
        """Best-effort: every failure is logged, none is raised.

        A receipt claim without a stored path (its holder is still rendering
        or never finished) does not hold the notification back.
        """
        path = None
        try:
            path = await self.ensure_artifact(transaction, student, fee)
        except Exception:
            logger.exception(f"Receipt generation failed for {transaction.order_id}")

        try:
            await self.ensure_notification(transaction, student, path, fee=fee)
        except Exception:
            logger.exception(f"Payment notification failed for {transaction.order_id}")
