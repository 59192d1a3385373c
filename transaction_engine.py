import csv
import logging
import os
import sys
from dataclasses import dataclass
from decimal import Context, Decimal, DivisionByZero, Inexact, InvalidOperation, Overflow, Rounded, localcontext

logger = logging.getLogger("transaction_engine")

SCALE = Decimal(".0001")
ZERO = Decimal("0.0000")

# amounts stay below MAX_AMOUNT, balances are computed exactly at MONEY_PRECISION digits
MAX_AMOUNT = Decimal("1E+20")
MONEY_PRECISION = 50
MONEY_CONTEXT = Context(prec=MONEY_PRECISION, traps=[InvalidOperation, DivisionByZero, Overflow, Inexact, Rounded])

MAX_CLIENT_ID = 65535
MAX_TX_ID = 4294967295

DEPOSIT = "deposit"
WITHDRAWAL = "withdrawal"
DISPUTE = "dispute"
RESOLVE = "resolve"
CHARGEBACK = "chargeback"

LOG_LEVEL_ENV = "TX_ENGINE_LOG_LEVEL"
OUTPUT_FIELDS = ["client", "available", "held", "total", "locked"]


class TransactionRejected(Exception):
    """A record that could not be applied. State is left untouched."""

    reason = "transaction rejected"

    def __init__(self, reason=None):
        if reason is not None:
            self.reason = reason
        super().__init__(self.reason)


class MalformedRecord(TransactionRejected):
    reason = "amount is missing"


class InsufficientFunds(TransactionRejected):
    reason = "nsf"


class UnknownTransaction(TransactionRejected):
    reason = "tx not found"


class InvalidDisputeOrigin(TransactionRejected):
    reason = "tx is not a deposit"


class InvalidDisputeState(TransactionRejected):
    reason = "tx is not disputed"


class InsufficientHeld(TransactionRejected):
    reason = "insufficient held funds"


class LockedAccountRejected(TransactionRejected):
    reason = "account is locked"


class DuplicateTransactionId(TransactionRejected):
    reason = "duplicates existing tx_id"


class ClientMismatch(TransactionRejected):
    reason = "tx client_id mismatch"


class BalanceOverflow(TransactionRejected):
    reason = "balance exceeds supported precision"


@dataclass(frozen=True)
class Record:
    client: int
    tx: int

    kind = None


@dataclass(frozen=True)
class Deposit(Record):
    amount: Decimal

    kind = DEPOSIT


@dataclass(frozen=True)
class Withdrawal(Record):
    amount: Decimal

    kind = WITHDRAWAL


@dataclass(frozen=True)
class Dispute(Record):
    kind = DISPUTE


@dataclass(frozen=True)
class Resolve(Record):
    kind = RESOLVE


@dataclass(frozen=True)
class Chargeback(Record):
    kind = CHARGEBACK


RECORD_TYPES = {
    DEPOSIT: Deposit,
    WITHDRAWAL: Withdrawal,
    DISPUTE: Dispute,
    RESOLVE: Resolve,
    CHARGEBACK: Chargeback,
}


@dataclass
class Account:
    client: int
    available: Decimal = ZERO
    held: Decimal = ZERO
    locked: bool = False

    @property
    def total(self):
        with localcontext(MONEY_CONTEXT):
            return self.available + self.held


@dataclass(frozen=True)
class AccountSnapshot:
    client: int
    available: Decimal
    held: Decimal
    total: Decimal
    locked: bool

    @classmethod
    def of(cls, account):
        return cls(account.client, account.available, account.held, account.total, account.locked)

    def as_row(self):
        return [
            self.client,
            format_money(self.available),
            format_money(self.held),
            format_money(self.total),
            str(self.locked).lower(),
        ]


@dataclass
class JournalEntry:
    client: int
    kind: str
    amount: Decimal
    under_dispute: bool = False


class Ledger:
    """Keyed store of client accounts. Performs no validation."""

    def __init__(self):
        self.accounts = {}

    def get(self, client):
        return self.accounts.get(client)

    def get_or_create(self, client):
        if client not in self.accounts:
            self.accounts[client] = Account(client)
        return self.accounts[client]

    def snapshot(self):
        return [AccountSnapshot.of(self.accounts[client]) for client in sorted(self.accounts)]


class TransactionJournal:
    """Deposits and withdrawals that moved money, keyed by tx id.

    Entries are only ever written for applied deposits and withdrawals; disputes,
    resolves and chargebacks flip ``under_dispute`` on the entry they reference.
    """

    def __init__(self):
        self.entries = {}

    def record(self, tx, entry):
        self.entries[tx] = entry

    def get(self, tx):
        return self.entries.get(tx)

    def __contains__(self, tx):
        return tx in self.entries

    def __len__(self):
        return len(self.entries)


class TransactionProcessor:
    """Applies records, in order, to a ledger and its transaction journal.

    Every record either applies completely or is rejected with a
    :class:`TransactionRejected` subclass and leaves both structures unchanged.
    A chargeback locks the account for the rest of the run.
    """

    def __init__(self, ledger=None, journal=None):
        self.ledger = ledger if ledger is not None else Ledger()
        self.journal = journal if journal is not None else TransactionJournal()
        self.applied = 0
        self.rejected = 0

    def apply(self, record):
        account = self.ledger.get_or_create(record.client)
        try:
            if account.locked:
                raise LockedAccountRejected()

            # handlers compute every new balance before assigning any
            with localcontext(MONEY_CONTEXT):
                if record.kind == DEPOSIT:
                    self.process_deposit(account, record)
                elif record.kind == WITHDRAWAL:
                    self.process_withdrawal(account, record)
                elif record.kind == DISPUTE:
                    self.process_dispute(account, record)
                elif record.kind == RESOLVE:
                    self.process_resolve(account, record)
                elif record.kind == CHARGEBACK:
                    self.process_chargeback(account, record)
                else:
                    raise TypeError(f"unsupported record: {record!r}")
        except (Inexact, Rounded):
            return self.reject(record, BalanceOverflow())
        except TransactionRejected as e:
            return self.reject(record, e)

        self.applied += 1
        return None

    def reject(self, record, error):
        self.rejected += 1
        self.error_log(record, error)
        return error

    def process_deposit(self, account, record):
        amount = self.get_transfer_amount(record)
        account.available = account.available + amount
        self.journal.record(record.tx, JournalEntry(record.client, DEPOSIT, amount))

    def process_withdrawal(self, account, record):
        amount = self.get_transfer_amount(record)
        if account.available < amount:
            raise InsufficientFunds()

        account.available -= amount
        self.journal.record(record.tx, JournalEntry(record.client, WITHDRAWAL, amount))

    def process_dispute(self, account, record):
        entry = self.get_referenced_entry(record)
        if entry.kind != DEPOSIT:
            raise InvalidDisputeOrigin()

        if entry.under_dispute:
            raise InvalidDisputeState("tx is already disputed")

        if account.available < entry.amount:
            raise InsufficientFunds()

        held = account.held + entry.amount
        account.available -= entry.amount
        account.held = held
        entry.under_dispute = True

    def process_resolve(self, account, record):
        entry = self.get_referenced_entry(record)
        if not entry.under_dispute:
            raise InvalidDisputeState()

        available = account.available + entry.amount
        account.held -= entry.amount
        account.available = available
        entry.under_dispute = False

    def process_chargeback(self, account, record):
        entry = self.get_referenced_entry(record)
        if not entry.under_dispute:
            raise InvalidDisputeState()

        if account.held < entry.amount:
            raise InsufficientHeld()

        account.held -= entry.amount
        account.locked = True

    def get_transfer_amount(self, record):
        amount = getattr(record, "amount", None)
        if amount is None:
            raise MalformedRecord()

        if record.tx in self.journal:
            raise DuplicateTransactionId()

        return amount

    def get_referenced_entry(self, record):
        entry = self.journal.get(record.tx)
        if entry is None:
            raise UnknownTransaction()

        if entry.client != record.client:
            raise ClientMismatch()

        return entry

    def error_log(self, record, error):
        amount = getattr(record, "amount", None)
        amount_detail = f" of {format_money(amount)}" if amount is not None else ""
        logger.warning(
            f"tx_id {record.tx}, client_id {record.client}, failed to apply {record.kind}{amount_detail}: {error}"
        )

    def snapshot(self):
        return self.ledger.snapshot()


class TransactionEngine:
    DEFAULT_FIELD_ORDER = ["type", "client", "tx", "amount"]

    def __init__(self, filename=None, processor=None):
        self.filename = filename
        self.processor = processor if processor is not None else TransactionProcessor()
        self.skipped_rows = 0

        self.type_field_idx = 0
        self.client_field_idx = 1
        self.tx_field_idx = 2
        self.amount_field_idx = 3

    def read_transaction_data(self):
        if not self.filename:
            raise RuntimeError("no filename to read has been set. aborting.")
        with open(self.filename, newline="") as file:
            self.process_rows(csv.reader(file))

        logger.info(
            f"processed {self.filename}: {self.processor.applied} applied, "
            f"{self.processor.rejected} rejected, {self.skipped_rows} rows skipped"
        )

    def process_rows(self, rows):
        header_checked = False
        for row in rows:
            if not any(field.strip() for field in row):
                continue
            if not header_checked:
                header_checked = True
                if self.discover_field_order(row):
                    continue
            self.process_row(row)

    def discover_field_order(self, row):
        """Map column positions from a header row.

        Returns True when ``row`` was a header. Anything else leaves the
        default ``type, client, tx, amount`` order in place.
        """
        names = [field.strip().lower() for field in row]
        if not {"type", "client", "tx"}.issubset(names):
            return False

        self.type_field_idx = names.index("type")
        self.client_field_idx = names.index("client")
        self.tx_field_idx = names.index("tx")
        self.amount_field_idx = names.index("amount") if "amount" in names else None
        return True

    def process_row(self, row):
        try:
            record = self.parse_row(row)
        except (ValueError, InvalidOperation) as e:
            self.skipped_rows += 1
            logger.warning(f"field format error: {e!r} while attempting to parse row like: {row!r}")
            return None

        return self.processor.apply(record)

    def parse_row(self, row):
        record_type = self.get_field(row, self.type_field_idx).lower()
        record_cls = RECORD_TYPES.get(record_type)
        if record_cls is None:
            raise ValueError(f"invalid record_type {record_type!r}")

        client_id = self.get_id(row, self.client_field_idx, "client_id", MAX_CLIENT_ID)
        tx_id = self.get_id(row, self.tx_field_idx, "tx_id", MAX_TX_ID)

        if record_cls in (Deposit, Withdrawal):
            # a missing amount is left for apply to reject, after the locked check
            raw_amount = self.get_field(row, self.amount_field_idx)
            return record_cls(client_id, tx_id, parse_money(raw_amount) if raw_amount else None)

        return record_cls(client_id, tx_id)

    def get_field(self, row, idx):
        if idx is None or idx >= len(row):
            return ""
        return row[idx].strip()

    def get_id(self, row, idx, name, upper_bound):
        raw = self.get_field(row, idx)
        if not raw:
            raise ValueError(f"{name} is missing")
        value = int(raw)
        if not (0 <= value <= upper_bound):
            raise ValueError(f"invalid {name} {value}")
        return value

    def get_account_snapshots(self):
        self.read_transaction_data()
        return self.processor.snapshot()

    def generate_output(self, out=None):
        snapshots = self.get_account_snapshots()
        csvwriter = csv.writer(out if out is not None else sys.stdout, lineterminator="\n")
        csvwriter.writerow(OUTPUT_FIELDS)
        for snapshot in snapshots:
            csvwriter.writerow(snapshot.as_row())


def parse_money(raw):
    amount = Decimal(raw)
    if not amount.is_finite():
        raise ValueError(f"amount {raw!r} is not a finite number")
    if amount < 0:
        raise ValueError(f"amount {raw!r} is negative")
    if amount >= MAX_AMOUNT:
        raise ValueError(f"amount {raw!r} is too large")
    quantized = amount.quantize(SCALE)
    if quantized != amount:
        raise ValueError(f"amount {raw!r} has more than 4 decimal places")
    return quantized.copy_abs()


def format_money(amount):
    with localcontext(MONEY_CONTEXT):
        return str(amount.quantize(SCALE))


def configure_logging(level=None):
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "WARNING")
    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s", stream=sys.stderr)


def main(argv=None):
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: transaction-engine <transactions.csv>", file=sys.stderr)
        return 2

    configure_logging()
    engine = TransactionEngine(args[0])
    try:
        engine.generate_output()
    except (OSError, csv.Error) as e:
        logger.error(f"unable to process {args[0]}: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
