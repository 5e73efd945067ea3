"""
Receipt delivery after checkout.

The checkout flow persists the sale first, then calls `notify_sale`. Delivery
is best effort: it runs in the background worker, it never raises into
checkout and it never modifies the sale.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from notifications.worker import CompletionCallback, DispatchWorker
from shared.models import (
    ChannelFamily,
    CompletedSale,
    DispatchRequest,
    MessageType,
)

logger = logging.getLogger("receipts")


@dataclass
class ReceiptNotice:
    """What checkout gets back: queued jobs per channel and operator warnings."""
    job_ids: dict[ChannelFamily, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def queued(self) -> bool:
        return bool(self.job_ids)


class ReceiptService:
    def __init__(self, worker: DispatchWorker):
        self.worker = worker

    def notify_sale(
        self,
        sale: CompletedSale,
        channels: Iterable[ChannelFamily] = (ChannelFamily.EMAIL,),
        on_complete: Optional[CompletionCallback] = None,
    ) -> ReceiptNotice:
        """
        Queue receipt delivery for a completed sale on each requested channel.

        Walk-in sales and customers without the needed contact detail are
        skipped with a warning for the operator.
        """
        notice = ReceiptNotice()
        if sale.is_walk_in:
            notice.warnings.append(
                f"Sale {sale.transaction_number} has no customer, receipt not sent"
            )
            return notice

        customer = sale.customer
        payload = sale.to_receipt_payload()
        for channel in dict.fromkeys(channels):
            address = customer.email if channel == ChannelFamily.EMAIL else customer.phone
            if not address:
                contact = "email address" if channel == ChannelFamily.EMAIL else "phone number"
                notice.warnings.append(
                    f"Customer {customer.name} has no {contact}, {channel.value} receipt skipped"
                )
                continue

            request = DispatchRequest(
                channel=channel,
                recipient_address=address,
                recipient_display_name=customer.name,
                message_type=MessageType.RECEIPT,
                payload=payload,
            )
            try:
                notice.job_ids[channel] = self.worker.submit(request, on_complete)
            except RuntimeError as e:
                logger.error(f"Could not queue {channel.value} receipt for {sale.transaction_number}: {e}")
                notice.warnings.append(f"Could not queue {channel.value} receipt: {e}")

        for warning in notice.warnings:
            logger.warning(warning)
        return notice
