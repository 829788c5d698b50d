"""
settlement_modules.invoicing.service
====================================

Responsibility:
    Issues the documents the engine settles: clients, quotes, standard,
    deposit and final invoices, and credit notes.  Thin glue over the pure
    engines -- every amount comes from MonetaryCalculator, split_deposit or
    BalanceResolver; this module only persists and numbers documents.

Architecture:
    Module layer.  Each public write method commits on success and rolls
    back on failure.  Status side effects of credit notes (auto-cancel of a
    fully credited invoice) go through InvoiceStatusController with
    ``auto_commit=False`` so they share this service's transaction.

Invariants enforced:
    - Amounts are Decimal end to end; stored amounts are the breakdown at
      issue time and are never recomputed afterwards.
    - Credit notes are stored negative and always reference their invoice.
    - A credit note may not drive the invoice balance below zero.
    - A credit note against a credit note is rejected.

Failure modes:
    - ClientNotFoundError / QuoteNotFoundError / InvoiceNotFoundError.
    - InvalidConfigError from the engines (bad rate, deposit larger than the project).
    - InvalidCreditNoteError, OverCreditError.

Usage::

    service = InvoiceService(session, clock=clock)
    client = service.create_client("Atelier Dupont", "compta@dupont.be", actor_id=actor)
    quote = service.create_quote(client.id, items, config, actor_id=actor)
    invoice = service.issue_invoice_from_quote(quote.id, actor_id=actor)
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement_engines.balance import BalanceResolver
from settlement_engines.calculator import (
    DepositConfig,
    DiscountConfig,
    FinancialConfig,
    LineItem,
    MonetaryBreakdown,
    MonetaryCalculator,
    StoredAmounts,
    VatConfig,
)
from settlement_engines.deposit import split_deposit
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.domain.money import ZERO
from settlement_kernel.exceptions import (
    ClientNotFoundError,
    InvalidCreditNoteError,
    InvoiceNotFoundError,
    OverCreditError,
    QuoteNotFoundError,
)
from settlement_kernel.logging_config import LogContext, get_logger
from settlement_modules.followup.config import FollowUpRules
from settlement_modules.followup.models import FollowUp
from settlement_modules.followup.scheduler import FollowUpScheduler
from settlement_modules.invoicing.amounts import resolve_invoice_balance
from settlement_modules.invoicing.config import InvoicingConfig
from settlement_modules.invoicing.events import record_invoice_event
from settlement_modules.invoicing.models import (
    Client,
    DocumentType,
    Invoice,
    InvoiceEvent,
    InvoiceEventType,
    InvoiceStatistics,
    InvoiceStatus,
    InvoiceType,
    Quote,
)
from settlement_modules.invoicing.orm import (
    ClientModel,
    InvoiceEventModel,
    InvoiceLineModel,
    InvoiceModel,
    QuoteLineModel,
    QuoteModel,
)
from settlement_modules.invoicing.status import InvoiceStatusController

logger = get_logger("modules.invoicing.service")

QUOTE_PREFIX = "DEV"
FULLY_CREDITED_REASON = "fully_credited"
_RATE_QUANTUM = Decimal("0.0001")


def _negated(lines: Iterable[LineItem]) -> list[LineItem]:
    """Credit-note image of priced lines."""
    return [
        LineItem(
            description=line.description,
            line_total=-line.line_total,
            quantity=line.quantity,
            unit=line.unit,
            unit_price=line.unit_price,
        )
        for line in lines
    ]


class InvoiceService:
    """
    Issues quotes, invoices and credit notes.

    Contract:
        Write methods commit and return a frozen DTO, or roll back and
        raise.  Read methods never write.
    """

    def __init__(
        self,
        session: Session,
        config: InvoicingConfig | None = None,
        clock: Clock | None = None,
        calculator: MonetaryCalculator | None = None,
        rules: FollowUpRules | None = None,
        resolver: BalanceResolver | None = None,
    ):
        self._session = session
        self._config = config or InvoicingConfig()
        self._clock = clock or SystemClock()
        self._calculator = calculator or MonetaryCalculator()
        self._resolver = resolver or BalanceResolver()
        self._scheduler = FollowUpScheduler(session, rules=rules, clock=self._clock)
        self._status = InvoiceStatusController(
            session,
            scheduler=self._scheduler,
            clock=self._clock,
            auto_commit=False,
            resolver=self._resolver,
        )

    # =========================================================================
    # Clients and quotes
    # =========================================================================

    def create_client(
        self,
        name: str,
        email: str | None,
        actor_id: UUID,
        language: str = "fr",
    ) -> Client:
        try:
            client = ClientModel(
                name=name, email=email, language=language, created_by_id=actor_id,
            )
            self._session.add(client)
            self._session.flush()
            self._session.commit()
            logger.info("client_created", extra={"client_id": str(client.id)})
            return client.to_dto()
        except Exception:
            self._session.rollback()
            raise

    def create_quote(
        self,
        client_id: UUID,
        line_items: Sequence[LineItem],
        financial_config: FinancialConfig,
        actor_id: UUID,
        title: str = "",
        stored: StoredAmounts | None = None,
    ) -> Quote:
        """Price the lines and persist the quote with its breakdown."""
        try:
            self._get_client_model(client_id)
            breakdown = self._calculator.compute(
                line_items=line_items, config=financial_config, stored=stored,
            )
            quote = QuoteModel(
                quote_number=self._next_number(
                    QuoteModel.quote_number, QUOTE_PREFIX,
                ),
                client_id=client_id,
                title=title,
                vat_enabled=financial_config.vat.enabled,
                vat_rate_percent=financial_config.vat.rate_percent,
                discount_enabled=financial_config.discount.enabled,
                discount_rate_percent=financial_config.discount.rate_percent,
                deposit_enabled=financial_config.deposit.enabled,
                deposit_amount=financial_config.deposit.amount,
                subtotal=breakdown.subtotal,
                discount_amount=breakdown.discount_amount,
                net_amount=breakdown.net_amount,
                vat_amount=breakdown.vat_amount,
                total_amount=breakdown.total_with_vat,
                created_by_id=actor_id,
            )
            quote.lines = [
                QuoteLineModel.from_line_item(item, position, actor_id)
                for position, item in enumerate(line_items, start=1)
            ]
            self._session.add(quote)
            self._session.flush()
            self._session.commit()

            logger.info(
                "quote_created",
                extra={
                    "quote_number": quote.quote_number,
                    "total_with_vat": str(breakdown.total_with_vat),
                },
            )
            return quote.to_dto()
        except Exception:
            self._session.rollback()
            raise

    # =========================================================================
    # Invoices
    # =========================================================================

    def issue_invoice_from_quote(
        self,
        quote_id: UUID,
        actor_id: UUID,
        issue_date: date | None = None,
    ) -> Invoice:
        """Issue a standard invoice for the whole quote."""
        try:
            quote = self._get_quote_model(quote_id)
            breakdown = self._quote_breakdown(quote)
            invoice = self._new_invoice(
                quote,
                InvoiceType.STANDARD,
                actor_id,
                issue_date,
                amount=breakdown.total_with_vat,
                net_amount=breakdown.net_amount,
                vat_amount=breakdown.vat_amount,
                vat_rate_percent=breakdown.vat_rate_percent,
                subtotal=breakdown.subtotal,
                discount_amount=breakdown.discount_amount,
            )
            return self._commit_issued(invoice)
        except Exception:
            self._session.rollback()
            raise

    def issue_deposit_invoice(
        self,
        quote_id: UUID,
        deposit_net: Decimal,
        actor_id: UUID,
        issue_date: date | None = None,
    ) -> Invoice:
        """Issue the upfront part of a project, grossed up at the blended VAT rate."""
        try:
            quote = self._get_quote_model(quote_id)
            split = split_deposit(
                self._quote_breakdown(quote),
                deposit_net,
                self._config.default_vat_rate_percent,
            )
            invoice = self._new_invoice(
                quote,
                InvoiceType.DEPOSIT,
                actor_id,
                issue_date,
                amount=split.deposit_total,
                net_amount=split.deposit_net,
                vat_amount=split.deposit_vat,
                vat_rate_percent=split.blended_rate_percent.quantize(_RATE_QUANTUM),
                subtotal=split.deposit_net,
                deposit_net=split.deposit_net,
                deposit_vat=split.deposit_vat,
                deposit_total=split.deposit_total,
                project_subtotal=split.project.subtotal,
                project_vat=split.project.vat_amount,
                project_total=split.project.total_with_vat,
                with_lines=False,
            )
            return self._commit_issued(invoice)
        except Exception:
            self._session.rollback()
            raise

    def issue_final_invoice(
        self,
        quote_id: UUID,
        deposit_invoice_id: UUID,
        actor_id: UUID,
        issue_date: date | None = None,
    ) -> Invoice:
        """
        Issue the remainder of a project after its deposit invoice.

        The invoice shows the full project net and VAT; ``amount`` is the
        project total minus the deposit invoice total.
        """
        try:
            quote = self._get_quote_model(quote_id)
            deposit = self._get_invoice_model(deposit_invoice_id)
            if (
                deposit.invoice_type != InvoiceType.DEPOSIT.value
                or deposit.quote_id != quote.id
            ):
                raise ValueError(
                    f"Invoice {deposit.invoice_number} is not a deposit invoice "
                    f"of quote {quote.quote_number}"
                )

            split = split_deposit(
                self._quote_breakdown(quote),
                deposit.deposit_net,
                self._config.default_vat_rate_percent,
            )
            invoice = self._new_invoice(
                quote,
                InvoiceType.FINAL,
                actor_id,
                issue_date,
                amount=split.remaining_total,
                net_amount=split.project.net_amount,
                vat_amount=split.project.vat_amount,
                vat_rate_percent=split.project.vat_rate_percent,
                subtotal=split.project.subtotal,
                discount_amount=split.project.discount_amount,
                deposit_invoice_id=deposit.id,
                deposit_net=split.deposit_net,
                deposit_vat=split.deposit_vat,
                deposit_total=split.deposit_total,
                project_subtotal=split.project.subtotal,
                project_vat=split.project.vat_amount,
                project_total=split.project.total_with_vat,
            )
            return self._commit_issued(invoice)
        except Exception:
            self._session.rollback()
            raise

    # =========================================================================
    # Credit notes
    # =========================================================================

    def issue_credit_note(
        self,
        invoice_id: UUID,
        actor_id: UUID,
        line_items: Sequence[LineItem] | None = None,
        reason: str | None = None,
    ) -> Invoice:
        """
        Issue a credit note against an invoice.

        Without line items the whole payable amount is credited.  With line
        items, the lines are priced at the invoice's VAT rate and negated.
        A credit note that brings an open invoice to a zero balance cancels
        that invoice (reason ``fully_credited``).

        Raises:
            InvoiceNotFoundError: If the invoice does not exist.
            InvalidCreditNoteError: Target is a credit note or cancelled.
            OverCreditError: Credit exceeds the outstanding balance.
        """
        with LogContext.bind(invoice_id=str(invoice_id), actor_id=str(actor_id)):
            try:
                invoice = self._session.execute(
                    select(InvoiceModel)
                    .where(InvoiceModel.id == invoice_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                ).scalar_one_or_none()
                if invoice is None:
                    raise InvoiceNotFoundError(str(invoice_id))
                if invoice.is_credit_note:
                    raise InvalidCreditNoteError(str(invoice_id), "target is a credit note")
                if invoice.status == InvoiceStatus.CANCELLED.value:
                    raise InvalidCreditNoteError(str(invoice_id), "invoice is cancelled")

                if line_items is None:
                    credit = self._full_credit(invoice)
                    credit_lines = _negated(line.to_line_item() for line in invoice.lines)
                else:
                    rate = invoice.vat_rate_percent or ZERO
                    credit = self._calculator.compute(
                        line_items=line_items,
                        config=FinancialConfig(
                            vat=VatConfig(enabled=rate > 0, rate_percent=rate),
                        ),
                    ).negated()
                    credit_lines = _negated(line_items)

                if credit.total_with_vat >= 0:
                    raise InvalidCreditNoteError(str(invoice_id), "credit amount must be positive")

                balance = resolve_invoice_balance(self._session, invoice, self._resolver)
                if balance + credit.total_with_vat < 0:
                    raise OverCreditError(
                        str(invoice_id), str(balance), str(-credit.total_with_vat),
                    )

                issue_date = self._clock.today()
                note = InvoiceModel(
                    invoice_number=self._next_number(
                        InvoiceModel.invoice_number,
                        self._config.credit_note_prefix,
                    ),
                    client_id=invoice.client_id,
                    quote_id=invoice.quote_id,
                    document_type=DocumentType.CREDIT_NOTE.value,
                    invoice_type=invoice.invoice_type,
                    status=InvoiceStatus.UNPAID.value,
                    title=invoice.title,
                    related_invoice_id=invoice.id,
                    issue_date=issue_date,
                    due_date=issue_date,
                    amount=credit.total_with_vat,
                    net_amount=credit.net_amount,
                    vat_amount=credit.vat_amount,
                    vat_rate_percent=invoice.vat_rate_percent,
                    subtotal=credit.subtotal,
                    discount_amount=credit.discount_amount,
                    balance_due=ZERO,
                    credit_reason=reason,
                    created_by_id=actor_id,
                )
                note.lines = [
                    InvoiceLineModel.from_line_item(item, position, actor_id)
                    for position, item in enumerate(credit_lines, start=1)
                ]
                self._session.add(note)
                self._session.flush()

                new_balance = balance + credit.total_with_vat
                if InvoiceStatus(invoice.status).is_open:
                    invoice.balance_due = new_balance
                invoice.updated_by_id = actor_id
                record_invoice_event(
                    self._session,
                    invoice_id=invoice.id,
                    event_type=InvoiceEventType.CREDIT_NOTE_ISSUED,
                    occurred_at=self._clock.now(),
                    actor_id=actor_id,
                    credit_note_id=note.id,
                    credit_note_number=note.invoice_number,
                    amount=note.amount,
                    balance_due=new_balance,
                    reason=reason,
                )
                self._session.flush()

                logger.info(
                    "credit_note_issued",
                    extra={
                        "credit_note_number": note.invoice_number,
                        "amount": str(note.amount),
                        "balance_due": str(new_balance),
                    },
                )

                if new_balance == 0 and InvoiceStatus(invoice.status).is_open:
                    self._status.cancel(invoice.id, actor_id, reason=FULLY_CREDITED_REASON)

                self._session.commit()
                return note.to_dto()
            except Exception:
                self._session.rollback()
                raise

    # =========================================================================
    # Reads
    # =========================================================================

    def get_client(self, client_id: UUID) -> Client:
        return self._get_client_model(client_id).to_dto()

    def get_quote(self, quote_id: UUID) -> Quote:
        return self._get_quote_model(quote_id).to_dto()

    def get_invoice(self, invoice_id: UUID) -> Invoice:
        return self._get_invoice_model(invoice_id).to_dto()

    def outstanding_balance(self, invoice_id: UUID) -> Decimal | None:
        """Live balance after credit notes; None for a credit note."""
        invoice = self._get_invoice_model(invoice_id)
        return resolve_invoice_balance(self._session, invoice, self._resolver)

    def list_follow_ups(self, invoice_id: UUID) -> list[FollowUp]:
        self._get_invoice_model(invoice_id)
        return self._scheduler.history(invoice_id)

    def list_events(self, invoice_id: UUID) -> list[InvoiceEvent]:
        rows = self._session.execute(
            select(InvoiceEventModel)
            .where(InvoiceEventModel.invoice_id == invoice_id)
            .order_by(InvoiceEventModel.occurred_at, InvoiceEventModel.created_at)
        ).scalars()
        return [row.to_dto() for row in rows]

    def invoice_statistics(self) -> InvoiceStatistics:
        """Invoice counts, payable totals per status, and the open balance."""
        rows = self._session.execute(
            select(
                InvoiceModel.status,
                func.count(InvoiceModel.id),
                func.coalesce(func.sum(InvoiceModel.amount), 0),
            )
            .where(InvoiceModel.document_type == DocumentType.INVOICE.value)
            .group_by(InvoiceModel.status)
        ).all()

        counts = {status.value: 0 for status in InvoiceStatus}
        amounts = {status.value: ZERO for status in InvoiceStatus}
        for status, count, total in rows:
            counts[status] = count
            amounts[status] = Decimal(str(total))

        outstanding = self._session.execute(
            select(func.coalesce(func.sum(InvoiceModel.balance_due), 0)).where(
                InvoiceModel.document_type == DocumentType.INVOICE.value,
                InvoiceModel.status.in_(
                    (InvoiceStatus.UNPAID.value, InvoiceStatus.OVERDUE.value),
                ),
            )
        ).scalar_one()

        return InvoiceStatistics(
            counts=counts,
            amounts=amounts,
            outstanding_balance=Decimal(str(outstanding)),
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_client_model(self, client_id: UUID) -> ClientModel:
        client = self._session.get(ClientModel, client_id)
        if client is None:
            raise ClientNotFoundError(str(client_id))
        return client

    def _get_quote_model(self, quote_id: UUID) -> QuoteModel:
        quote = self._session.get(QuoteModel, quote_id)
        if quote is None:
            raise QuoteNotFoundError(str(quote_id))
        return quote

    def _get_invoice_model(self, invoice_id: UUID) -> InvoiceModel:
        invoice = self._session.get(InvoiceModel, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    def _quote_breakdown(self, quote: QuoteModel) -> MonetaryBreakdown:
        """Recompute the quote from its own lines and configuration."""
        return self._calculator.compute(
            line_items=[line.to_line_item() for line in quote.lines],
            config=FinancialConfig(
                vat=VatConfig(enabled=quote.vat_enabled, rate_percent=quote.vat_rate_percent),
                discount=DiscountConfig(
                    enabled=quote.discount_enabled,
                    rate_percent=quote.discount_rate_percent,
                ),
                deposit=DepositConfig(
                    enabled=quote.deposit_enabled, amount=quote.deposit_amount,
                ),
            ),
            stored=StoredAmounts(
                subtotal=quote.subtotal,
                vat_amount=quote.vat_amount,
                total_amount=quote.total_amount,
            ),
        )

    def _full_credit(self, invoice: InvoiceModel) -> MonetaryBreakdown:
        """Negated payable amounts of the invoice."""
        net = invoice.net_amount
        vat = invoice.vat_amount
        if invoice.invoice_type == InvoiceType.FINAL.value:
            net = net - (invoice.deposit_net or ZERO)
            vat = vat - (invoice.deposit_vat or ZERO)
        return MonetaryBreakdown(
            subtotal=net,
            discount_amount=ZERO,
            net_amount=net,
            vat_amount=vat,
            total_with_vat=invoice.amount,
            deposit_amount=ZERO,
            balance_amount=invoice.amount,
            vat_rate_percent=invoice.vat_rate_percent,
        ).negated()

    def _new_invoice(
        self,
        quote: QuoteModel,
        invoice_type: InvoiceType,
        actor_id: UUID,
        issue_date: date | None,
        *,
        amount: Decimal,
        with_lines: bool = True,
        **columns,
    ) -> InvoiceModel:
        issue_date = issue_date or self._clock.today()
        invoice = InvoiceModel(
            invoice_number=self._next_number(
                InvoiceModel.invoice_number, self._config.invoice_prefix,
            ),
            client_id=quote.client_id,
            quote_id=quote.id,
            document_type=DocumentType.INVOICE.value,
            invoice_type=invoice_type.value,
            status=InvoiceStatus.UNPAID.value,
            title=quote.title,
            issue_date=issue_date,
            due_date=issue_date + timedelta(days=self._config.payment_terms_days),
            amount=amount,
            balance_due=amount,
            created_by_id=actor_id,
            **columns,
        )
        if with_lines:
            invoice.lines = [
                InvoiceLineModel.from_line_item(line.to_line_item(), position, actor_id)
                for position, line in enumerate(quote.lines, start=1)
            ]
        self._session.add(invoice)
        self._session.flush()
        return invoice

    def _commit_issued(self, invoice: InvoiceModel) -> Invoice:
        self._session.commit()
        logger.info(
            "invoice_issued",
            extra={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "invoice_type": invoice.invoice_type,
                "amount": str(invoice.amount),
                "due_date": invoice.due_date.isoformat(),
            },
        )
        return invoice.to_dto()

    def _next_number(self, column, prefix: str) -> str:
        """``PREFIX-YYYY-NNNN``, sequential per prefix and year."""
        year = self._clock.today().year
        stem = f"{prefix}-{year}-"
        last = self._session.execute(
            select(func.max(column)).where(column.like(f"{stem}%"))
        ).scalar()
        next_value = int(last.rsplit("-", 1)[1]) + 1 if last else 1
        return f"{stem}{next_value:04d}"
