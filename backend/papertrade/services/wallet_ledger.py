"""
Wallet Ledger
PaperTrade Accounting Engine

Append-only transaction ledger with a cached balance projection.

Every posting appends one LedgerTransaction carrying before/after values
and updates the cached Wallet row in the same unit of work. The ledger is
authoritative: recalculate_from_ledger() replays it from a zero seed and
overwrites the cache.

Posting semantics:
- CREDIT      balance += amount
- DEBIT       balance -= amount      (requires amount <= available)
- BLOCK       blocked += amount      (requires amount <= available)
- UNBLOCK     blocked -= amount      (clamped at zero)
- SETTLEMENT  balance += amount      (signed, realized P&L settlement)

available = balance - blocked
"""

from decimal import Decimal
from typing import List, Optional

from loguru import logger

from papertrade.core.config import TradingSettings, get_settings
from papertrade.core.errors import ErrorCode, InsufficientFundsError, TradingError
from papertrade.db.models import (
    LedgerReferenceType,
    LedgerTransaction,
    TransactionType,
    Wallet,
)
from papertrade.db.unit_of_work import UnitOfWork
from papertrade.schemas.trading import TransactionQuery
from papertrade.services.market_calendar import to_utc
from papertrade.utils.money import ZERO, round_money


def ensure_positive_amount(amount) -> Decimal:
    value = round_money(amount)
    if not value.is_finite() or value <= 0:
        raise TradingError(ErrorCode.INVALID_AMOUNT, f"Amount must be positive, got {amount}")
    return value


def apply_posting(
    type: TransactionType,
    amount: Decimal,
    balance: Decimal,
    blocked: Decimal,
) -> tuple:
    """Return (balance, blocked) after one posting."""
    if type == TransactionType.CREDIT:
        return balance + amount, blocked
    if type == TransactionType.DEBIT:
        return balance - amount, blocked
    if type == TransactionType.BLOCK:
        return balance, blocked + amount
    if type == TransactionType.UNBLOCK:
        return balance, max(ZERO, blocked - amount)
    if type == TransactionType.SETTLEMENT:
        return balance + amount, blocked
    raise ValueError(f"Unknown transaction type: {type}")


class WalletLedger:
    """Ledger postings and wallet projection for one store."""

    def __init__(self, config: Optional[TradingSettings] = None):
        self.config = config or get_settings().trading

    # =========================================================================
    # Wallet
    # =========================================================================

    async def get_wallet(
        self,
        uow: UnitOfWork,
        user_id: str,
        initial_balance: Optional[Decimal] = None,
    ) -> Wallet:
        """
        Get the user's wallet, creating it on first access.

        A new wallet is seeded with one SEED credit so that replaying the
        ledger from zero reproduces the balance.
        """
        wallet = await uow.wallets.get_by_user(user_id, for_update=True)
        if wallet is not None:
            return wallet

        seed = round_money(
            initial_balance if initial_balance is not None else self.config.default_wallet_balance
        )
        wallet = await uow.wallets.add(
            Wallet(
                user_id=user_id,
                balance=ZERO,
                equity=ZERO,
                blocked_balance=ZERO,
            )
        )
        if seed > 0:
            await self._post(
                uow, wallet, TransactionType.CREDIT, seed,
                LedgerReferenceType.SEED, user_id, "Opening balance",
            )
        logger.bind(user_id=user_id).info(f"Wallet created with opening balance {seed}")
        return wallet

    async def get_available_balance(self, uow: UnitOfWork, user_id: str) -> Decimal:
        wallet = await self.get_wallet(uow, user_id)
        return round_money(wallet.available_balance)

    # =========================================================================
    # Postings
    # =========================================================================

    async def _post(
        self,
        uow: UnitOfWork,
        wallet: Wallet,
        type: TransactionType,
        amount: Decimal,
        reference_type: LedgerReferenceType,
        reference_id: str,
        description: Optional[str] = None,
        leg: str = "",
    ) -> LedgerTransaction:
        existing = await uow.transactions.get_by_reference(
            wallet.user_id, type.value, reference_type.value, str(reference_id), leg
        )
        if existing is not None:
            logger.bind(user_id=wallet.user_id, reference_id=str(reference_id)).debug(
                f"Ledger posting {type.value}/{leg or '-'} already recorded"
            )
            return existing

        balance_before = round_money(wallet.balance)
        blocked_before = round_money(wallet.blocked_balance)
        balance_after, blocked_after = apply_posting(type, amount, balance_before, blocked_before)

        entry = await uow.transactions.add(
            LedgerTransaction(
                user_id=wallet.user_id,
                type=type.value,
                amount=amount,
                balance_before=balance_before,
                balance_after=round_money(balance_after),
                blocked_before=blocked_before,
                blocked_after=round_money(blocked_after),
                reference_type=reference_type.value,
                reference_id=str(reference_id),
                leg=leg,
                description=description,
            )
        )

        wallet.balance = round_money(balance_after)
        wallet.blocked_balance = round_money(blocked_after)
        wallet.equity = wallet.balance
        await uow.flush()
        return entry

    async def credit_balance(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount,
        reference_type: LedgerReferenceType,
        reference_id: str,
        description: Optional[str] = None,
        leg: str = "CREDIT",
    ) -> LedgerTransaction:
        amount = ensure_positive_amount(amount)
        wallet = await self.get_wallet(uow, user_id)
        return await self._post(
            uow, wallet, TransactionType.CREDIT, amount, reference_type, reference_id, description, leg
        )

    async def credit_proceeds(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount,
        reference_type: LedgerReferenceType,
        reference_id: str,
        description: Optional[str] = None,
        leg: str = "PROCEEDS",
    ) -> LedgerTransaction:
        """Credit sale proceeds or option premium received."""
        return await self.credit_balance(
            uow, user_id, amount, reference_type, reference_id, description, leg
        )

    async def debit_balance(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount,
        reference_type: LedgerReferenceType,
        reference_id: str,
        description: Optional[str] = None,
        leg: str = "DEBIT",
    ) -> LedgerTransaction:
        """
        Debit cash.

        Raises:
            InsufficientFundsError: amount exceeds balance - blocked
        """
        amount = ensure_positive_amount(amount)
        wallet = await self.get_wallet(uow, user_id)
        available = round_money(wallet.available_balance)
        if amount > available:
            raise InsufficientFundsError(available, amount)
        return await self._post(
            uow, wallet, TransactionType.DEBIT, amount, reference_type, reference_id, description, leg
        )

    async def block_margin(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount,
        reference_type: LedgerReferenceType,
        reference_id: str,
        description: Optional[str] = None,
        leg: str = "MARGIN_BLOCK",
    ) -> LedgerTransaction:
        amount = ensure_positive_amount(amount)
        wallet = await self.get_wallet(uow, user_id)
        available = round_money(wallet.available_balance)
        if amount > available:
            raise InsufficientFundsError(available, amount)
        return await self._post(
            uow, wallet, TransactionType.BLOCK, amount, reference_type, reference_id, description, leg
        )

    async def release_margin_block(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount,
        reference_type: LedgerReferenceType,
        reference_id: str,
        description: Optional[str] = None,
        leg: str = "MARGIN_RELEASE",
    ) -> LedgerTransaction:
        """Release blocked margin; never releases more than is blocked."""
        amount = ensure_positive_amount(amount)
        wallet = await self.get_wallet(uow, user_id)
        amount = min(amount, round_money(wallet.blocked_balance))
        if amount <= 0:
            raise TradingError(ErrorCode.INVALID_AMOUNT, "No blocked margin to release")
        return await self._post(
            uow, wallet, TransactionType.UNBLOCK, amount, reference_type, reference_id, description, leg
        )

    async def settle(
        self,
        uow: UnitOfWork,
        user_id: str,
        amount,
        reference_type: LedgerReferenceType,
        reference_id: str,
        description: Optional[str] = None,
        leg: str = "SETTLEMENT",
        enforce_funds: bool = True,
    ) -> LedgerTransaction:
        """
        Signed cash settlement (realized futures P&L).

        A negative amount is a loss. With ``enforce_funds`` it must be
        covered by available balance; closing trades book it regardless.
        """
        amount = round_money(amount)
        if amount == 0:
            raise TradingError(ErrorCode.INVALID_AMOUNT, "Settlement amount cannot be zero")
        wallet = await self.get_wallet(uow, user_id)
        if amount < 0 and enforce_funds:
            available = round_money(wallet.available_balance)
            if -amount > available:
                raise InsufficientFundsError(available, -amount)
        return await self._post(
            uow, wallet, TransactionType.SETTLEMENT, amount, reference_type, reference_id, description, leg
        )

    # =========================================================================
    # Queries & repair
    # =========================================================================

    async def get_transactions(
        self,
        uow: UnitOfWork,
        user_id: str,
        query: Optional[TransactionQuery] = None,
    ) -> List[LedgerTransaction]:
        query = query or TransactionQuery()
        limit = min(query.limit, self.config.max_transaction_page_size)
        return await uow.transactions.search(
            user_id,
            type=query.type.value if query.type else None,
            reference_type=query.reference_type.value if query.reference_type else None,
            start=to_utc(query.start_date) if query.start_date else None,
            end=to_utc(query.end_date) if query.end_date else None,
            limit=limit,
            offset=(query.page - 1) * limit,
        )

    async def recalculate_from_ledger(self, uow: UnitOfWork, user_id: str) -> Wallet:
        """
        Rebuild the cached wallet by replaying the full ledger from zero.

        Drift between the cache and the replay is logged and overwritten.
        """
        wallet = await self.get_wallet(uow, user_id)
        balance, blocked = ZERO, ZERO
        for entry in await uow.transactions.get_history(user_id):
            balance, blocked = apply_posting(
                TransactionType(entry.type), round_money(entry.amount), balance, blocked
            )

        balance, blocked = round_money(balance), round_money(blocked)
        if balance != round_money(wallet.balance) or blocked != round_money(wallet.blocked_balance):
            logger.bind(user_id=user_id).warning(
                f"Wallet drift repaired: cached balance={wallet.balance} blocked={wallet.blocked_balance}, "
                f"ledger balance={balance} blocked={blocked}"
            )

        wallet.balance = balance
        wallet.blocked_balance = blocked
        wallet.equity = balance
        await uow.flush()
        return wallet
