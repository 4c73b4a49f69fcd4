"""Typed transaction-manifest builder.

Manifests are built as a list of instructions holding typed values and only
turned into the ledger's textual manifest format by :meth:`Manifest.render`.
That keeps construction testable without string matching and makes sure
every address and amount is quoted the same way.

Rendered form of a single instruction::

    CALL_METHOD
        Address("component_...")
        "fund_units_distribution"
        Map<Address, Decimal>(Address("account_...") => Decimal("1.5"))
        true
    ;
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal

from fund_engine.models.distribution import DistributionItem


class ManifestValue:
    """Base class for typed manifest arguments."""

    kind: str = ""

    def render(self) -> str:
        raise NotImplementedError


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


@dataclass(frozen=True)
class AddressValue(ManifestValue):
    address: str
    kind = "Address"

    def render(self) -> str:
        return f"Address({_quote(self.address)})"


@dataclass(frozen=True)
class DecimalValue(ManifestValue):
    amount: Decimal | str
    kind = "Decimal"

    def render(self) -> str:
        amount = self.amount if isinstance(self.amount, str) else format(self.amount, "f")
        return f"Decimal({_quote(amount)})"


@dataclass(frozen=True)
class StringValue(ManifestValue):
    value: str
    kind = "String"

    def render(self) -> str:
        return _quote(self.value)


@dataclass(frozen=True)
class BoolValue(ManifestValue):
    value: bool
    kind = "Bool"

    def render(self) -> str:
        return "true" if self.value else "false"


@dataclass(frozen=True)
class NonFungibleLocalIdValue(ManifestValue):
    local_id: str
    kind = "NonFungibleLocalId"

    def render(self) -> str:
        return f"NonFungibleLocalId({_quote(self.local_id)})"


@dataclass(frozen=True)
class BucketValue(ManifestValue):
    name: str
    kind = "Bucket"

    def render(self) -> str:
        return f"Bucket({_quote(self.name)})"


@dataclass(frozen=True)
class ExpressionValue(ManifestValue):
    expression: str
    kind = "Expression"

    def render(self) -> str:
        return f"Expression({_quote(self.expression)})"


@dataclass(frozen=True)
class TupleValue(ManifestValue):
    items: tuple[ManifestValue, ...]
    kind = "Tuple"

    def render(self) -> str:
        return "Tuple(" + ", ".join(item.render() for item in self.items) + ")"


@dataclass(frozen=True)
class MapValue(ManifestValue):
    key_kind: str
    value_kind: str
    entries: tuple[tuple[ManifestValue, ManifestValue], ...] = ()
    kind = "Map"

    def render(self) -> str:
        body = ", ".join(f"{key.render()} => {value.render()}" for key, value in self.entries)
        return f"Map<{self.key_kind}, {self.value_kind}>({body})"


@dataclass(frozen=True)
class CallMethod:
    """``CALL_METHOD`` instruction."""

    address: str
    method: str
    args: tuple[ManifestValue, ...] = ()

    def render(self, indent: str = "    ") -> str:
        lines = ["CALL_METHOD", f"{indent}{AddressValue(self.address).render()}", f"{indent}{_quote(self.method)}"]
        lines.extend(f"{indent}{arg.render()}" for arg in self.args)
        lines.append(";")
        return "\n".join(lines)


@dataclass(frozen=True)
class TakeAllFromWorktop:
    """``TAKE_ALL_FROM_WORKTOP`` instruction: move a resource into a named bucket."""

    resource_address: str
    bucket: str

    def render(self, indent: str = "    ") -> str:
        return "\n".join(
            [
                "TAKE_ALL_FROM_WORKTOP",
                f"{indent}{AddressValue(self.resource_address).render()}",
                f"{indent}{BucketValue(self.bucket).render()}",
                ";",
            ]
        )


Instruction = CallMethod | TakeAllFromWorktop


@dataclass(frozen=True)
class Manifest:
    instructions: tuple[Instruction, ...] = field(default_factory=tuple)

    def render(self) -> str:
        return "\n".join(instruction.render() for instruction in self.instructions) + "\n"

    def with_fee_lock(self, account_address: str, amount: Decimal) -> Manifest:
        """Return a copy that starts by locking *amount* of fees on *account_address*."""
        lock = CallMethod(account_address, "lock_fee", (DecimalValue(amount),))
        return Manifest((lock, *self.instructions))

    def find(self, method: str) -> CallMethod | None:
        for instruction in self.instructions:
            if isinstance(instruction, CallMethod) and instruction.method == method:
                return instruction
        return None


class ManifestBuilder:
    """Fluent builder for :class:`Manifest`."""

    def __init__(self) -> None:
        self._instructions: list[Instruction] = []

    def call_method(self, address: str, method: str, *args: ManifestValue) -> ManifestBuilder:
        self._instructions.append(CallMethod(address, method, tuple(args)))
        return self

    def take_all_from_worktop(self, resource_address: str, bucket: str) -> ManifestBuilder:
        self._instructions.append(TakeAllFromWorktop(resource_address, bucket))
        return self

    def create_proof_of_amount(self, account_address: str, resource_address: str, amount: Decimal) -> ManifestBuilder:
        return self.call_method(
            account_address,
            "create_proof_of_amount",
            AddressValue(resource_address),
            DecimalValue(amount),
        )

    def build(self) -> Manifest:
        return Manifest(tuple(self._instructions))


# ---------------------------------------------------------------------------
# Fund manager manifests
# ---------------------------------------------------------------------------

_BADGE_PROOF_AMOUNT = Decimal(1)


def _badge_builder(account_address: str, badge_address: str) -> ManifestBuilder:
    return ManifestBuilder().create_proof_of_amount(account_address, badge_address, _BADGE_PROOF_AMOUNT)


def start_unlock_manifest(account_address: str, badge_address: str, component_address: str, amount: Decimal) -> Manifest:
    """Begin unlocking *amount* owner stake units held by the fund manager."""
    return (
        _badge_builder(account_address, badge_address)
        .call_method(component_address, "start_unlock_owner_stake_units", DecimalValue(amount))
        .build()
    )


def start_unstake_manifest(account_address: str, badge_address: str, component_address: str) -> Manifest:
    return _badge_builder(account_address, badge_address).call_method(component_address, "start_unstake").build()


def finish_unstake_manifest(
    account_address: str,
    badge_address: str,
    component_address: str,
    claim_nft_id: str,
    price_messages: Mapping[str, tuple[str, str]],
) -> Manifest:
    """Redeem the claim receipt, passing a signed price per priced resource.

    ``price_messages`` maps a resource address to ``(message, signature)``.
    """
    prices = MapValue(
        "Address",
        "Tuple",
        tuple(
            (AddressValue(resource), TupleValue((StringValue(message), StringValue(signature))))
            for resource, (message, signature) in price_messages.items()
        ),
    )
    return (
        _badge_builder(account_address, badge_address)
        .call_method(component_address, "finish_unstake", NonFungibleLocalIdValue(claim_nft_id), prices)
        .build()
    )


def fund_units_distribution_manifest(
    account_address: str,
    badge_address: str,
    component_address: str,
    distributions: Iterable[DistributionItem],
    more_left: bool,
) -> Manifest:
    """Pay one batch of fund units; *more_left* tells the component whether the round continues."""
    payouts = MapValue(
        "Address",
        "Decimal",
        tuple((AddressValue(item.address), DecimalValue(item.amount)) for item in distributions),
    )
    return (
        _badge_builder(account_address, badge_address)
        .call_method(component_address, "fund_units_distribution", payouts, BoolValue(more_left))
        .build()
    )


# ---------------------------------------------------------------------------
# Maintenance manifests
# ---------------------------------------------------------------------------


def renew_oracle_subscription_manifest(
    account_address: str,
    xrd_resource: str,
    fee: Decimal,
    subscription_component: str,
    subscription_method: str,
    nft_id: str,
) -> Manifest:
    """Pay *fee* XRD from the bot account to extend the oracle NFT's subscription."""
    return (
        ManifestBuilder()
        .call_method(account_address, "withdraw", AddressValue(xrd_resource), DecimalValue(fee))
        .take_all_from_worktop(xrd_resource, "payment")
        .call_method(
            subscription_component,
            subscription_method,
            NonFungibleLocalIdValue(nft_id),
            BucketValue("payment"),
        )
        .call_method(account_address, "deposit_batch", ExpressionValue("ENTIRE_WORKTOP"))
        .build()
    )
