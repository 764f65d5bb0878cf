"""Wallet/earnings ledger: credits agents for delivered orders."""

from decimal import Decimal

from sqlalchemy import func, select

from gasmarket.common.auth import Principal
from gasmarket.common.config import settings
from gasmarket.common.errors import AuthorizationError
from gasmarket.common.logging import logger
from gasmarket.common.metrics import wallet_credits_total
from gasmarket.services.wallet.models import Wallet, WalletTransaction

ORDER_CREDIT = "order_credit"


class WalletLedger:
    """Posts append-only credits and keeps each wallet balance in step."""

    def __init__(self, session_factory, service_name: str = "wallet") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def _get_or_create_wallet(self, db, agent_id: str) -> Wallet:
        wallet = db.execute(
            select(Wallet).where(Wallet.user_id == agent_id).with_for_update()
        ).scalar_one_or_none()
        if wallet is None:
            wallet = Wallet(user_id=agent_id, balance=Decimal("0"), currency=settings.currency)
            db.add(wallet)
            db.flush()
        return wallet

    def credit_for_order(self, db, order) -> bool:
        """Credit the order's agent with its grand total, at most once per order.

        Runs in the caller's transaction. Returns False when the order was
        already credited.
        """

        already = db.execute(
            select(WalletTransaction.id).where(
                WalletTransaction.order_id == order.id,
                WalletTransaction.entry_type == ORDER_CREDIT,
            )
        ).scalar_one_or_none()
        if already is not None:
            logger.warning("wallet_credit_skipped order_id=%s reason=already_credited", order.id)
            return False

        wallet = self._get_or_create_wallet(db, order.agent_id)
        amount = Decimal(order.grand_total)
        wallet.balance = Decimal(wallet.balance or 0) + amount
        db.add(
            WalletTransaction(
                wallet_id=wallet.id,
                order_id=order.id,
                entry_type=ORDER_CREDIT,
                amount=amount,
                balance_after=wallet.balance,
                description=f"Order #{order.order_number}",
            )
        )
        wallet_credits_total.labels(service=self.service_name).inc()
        logger.info("wallet_credited agent_id=%s order_id=%s amount=%s", order.agent_id, order.id, amount)
        return True

    def earnings(self, principal: Principal, limit: int = 20) -> dict:
        """Balance, lifetime credits and recent entries for the calling agent."""

        if not principal.is_agent:
            raise AuthorizationError("Only agents can view earnings")
        with self.session_factory() as db:
            wallet = db.execute(select(Wallet).where(Wallet.user_id == principal.user_id)).scalar_one_or_none()
            if wallet is None:
                return {
                    "balance": 0.0,
                    "currency": settings.currency,
                    "total_credited": 0.0,
                    "transactions": [],
                }
            total = db.execute(
                select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                    WalletTransaction.wallet_id == wallet.id
                )
            ).scalar_one()
            entries = db.execute(
                select(WalletTransaction)
                .where(WalletTransaction.wallet_id == wallet.id)
                .order_by(WalletTransaction.created_at.desc())
                .limit(limit)
            ).scalars().all()
            return {
                "balance": float(wallet.balance),
                "currency": wallet.currency,
                "total_credited": float(total),
                "transactions": [
                    {
                        "id": e.id,
                        "order_id": e.order_id,
                        "type": e.entry_type,
                        "amount": float(e.amount),
                        "balance_after": float(e.balance_after),
                        "description": e.description,
                        "created_at": e.created_at,
                    }
                    for e in entries
                ],
            }

    def reconciliation_report(self, limit: int = 1000) -> dict:
        """Find wallets whose balance differs from the sum of their entries."""

        with self.session_factory() as db:
            rows = db.execute(
                select(
                    Wallet.id,
                    Wallet.user_id,
                    Wallet.balance,
                    func.coalesce(func.sum(WalletTransaction.amount), 0).label("entries_total"),
                    func.count(WalletTransaction.id).label("entry_count"),
                )
                .outerjoin(WalletTransaction, WalletTransaction.wallet_id == Wallet.id)
                .group_by(Wallet.id, Wallet.user_id, Wallet.balance)
                .order_by(Wallet.user_id)
                .limit(limit)
            ).all()
            mismatched = [
                {
                    "wallet_id": row.id,
                    "agent_id": row.user_id,
                    "balance": float(row.balance),
                    "entries_total": float(row.entries_total),
                    "entry_count": int(row.entry_count),
                }
                for row in rows
                if Decimal(str(row.balance)) != Decimal(str(row.entries_total))
            ]
            return {
                "wallets_checked": len(rows),
                "mismatched_count": len(mismatched),
                "mismatched_wallets": mismatched,
            }
