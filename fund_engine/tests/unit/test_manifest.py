"""Tests for the typed manifest builder and its text rendering."""

from __future__ import annotations

from decimal import Decimal

from fund_engine.ledger.manifest import (
    AddressValue,
    BoolValue,
    BucketValue,
    DecimalValue,
    ExpressionValue,
    MapValue,
    ManifestBuilder,
    NonFungibleLocalIdValue,
    StringValue,
    TupleValue,
    finish_unstake_manifest,
    fund_units_distribution_manifest,
    renew_oracle_subscription_manifest,
    start_unlock_manifest,
    start_unstake_manifest,
)
from fund_engine.models.distribution import DistributionItem

ACCOUNT = "account_bot"
BADGE = "resource_badge"
COMPONENT = "component_fund"

# ---------------------------------------------------------------------------
# Value rendering
# ---------------------------------------------------------------------------


class TestValueRendering:
    def test_decimal_uses_plain_notation(self) -> None:
        assert DecimalValue(Decimal("1E+3")).render() == 'Decimal("1000")'
        assert DecimalValue("0.100000000000000000").render() == 'Decimal("0.100000000000000000")'

    def test_strings_are_escaped(self) -> None:
        assert StringValue('say "hi"').render() == '"say \\"hi\\""'

    def test_bool(self) -> None:
        assert BoolValue(True).render() == "true"
        assert BoolValue(False).render() == "false"

    def test_empty_map(self) -> None:
        assert MapValue("Address", "Decimal").render() == "Map<Address, Decimal>()"

    def test_tuple(self) -> None:
        value = TupleValue((StringValue("m"), StringValue("s")))
        assert value.render() == 'Tuple("m", "s")'


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class TestManifestBuilder:
    def test_render_layout(self) -> None:
        manifest = ManifestBuilder().call_method(COMPONENT, "ping", AddressValue("account_x")).build()
        assert manifest.render() == (
            'CALL_METHOD\n    Address("component_fund")\n    "ping"\n    Address("account_x")\n;\n'
        )

    def test_fee_lock_is_prepended(self) -> None:
        manifest = start_unstake_manifest(ACCOUNT, BADGE, COMPONENT).with_fee_lock(ACCOUNT, Decimal(10))

        methods = [instruction.method for instruction in manifest.instructions]
        assert methods == ["lock_fee", "create_proof_of_amount", "start_unstake"]
        assert manifest.instructions[0].address == ACCOUNT

    def test_fee_lock_leaves_original_untouched(self) -> None:
        manifest = start_unstake_manifest(ACCOUNT, BADGE, COMPONENT)
        manifest.with_fee_lock(ACCOUNT, Decimal(10))
        assert manifest.find("lock_fee") is None


# ---------------------------------------------------------------------------
# Fund manager manifests
# ---------------------------------------------------------------------------


class TestFundManagerManifests:
    def test_every_manifest_proves_the_badge(self) -> None:
        for manifest in (
            start_unlock_manifest(ACCOUNT, BADGE, COMPONENT, Decimal(5)),
            start_unstake_manifest(ACCOUNT, BADGE, COMPONENT),
            finish_unstake_manifest(ACCOUNT, BADGE, COMPONENT, "{claim}", {}),
            fund_units_distribution_manifest(ACCOUNT, BADGE, COMPONENT, [], False),
        ):
            proof = manifest.instructions[0]
            assert proof.method == "create_proof_of_amount"
            assert proof.args == (AddressValue(BADGE), DecimalValue(Decimal(1)))

    def test_start_unlock_amount(self) -> None:
        manifest = start_unlock_manifest(ACCOUNT, BADGE, COMPONENT, Decimal("1234.5"))
        call = manifest.find("start_unlock_owner_stake_units")
        assert call is not None
        assert call.address == COMPONENT
        assert 'Decimal("1234.5")' in manifest.render()

    def test_finish_unstake_passes_claim_and_prices(self) -> None:
        manifest = finish_unstake_manifest(
            ACCOUNT, BADGE, COMPONENT, "{claim-1}", {"resource_xrd": ("XRD/USD-0.05-n-1", "sig")}
        )
        rendered = manifest.render()
        assert 'NonFungibleLocalId("{claim-1}")' in rendered
        assert 'Map<Address, Tuple>(Address("resource_xrd") => Tuple("XRD/USD-0.05-n-1", "sig"))' in rendered

    def test_distribution_batch(self) -> None:
        items = [
            DistributionItem(address="account_a", amount="10.000000000000000000"),
            DistributionItem(address="account_b", amount="30.000000000000000000"),
        ]
        rendered = fund_units_distribution_manifest(ACCOUNT, BADGE, COMPONENT, items, True).render()

        assert (
            'Map<Address, Decimal>(Address("account_a") => Decimal("10.000000000000000000"), '
            'Address("account_b") => Decimal("30.000000000000000000"))'
        ) in rendered
        assert rendered.rstrip().endswith("true\n;")

    def test_final_batch_flag(self) -> None:
        rendered = fund_units_distribution_manifest(ACCOUNT, BADGE, COMPONENT, [], False).render()
        assert "    false\n;" in rendered


# ---------------------------------------------------------------------------
# Maintenance manifests
# ---------------------------------------------------------------------------


class TestRenewOracleSubscription:
    def _manifest(self):
        return renew_oracle_subscription_manifest(
            ACCOUNT, "resource_xrd", Decimal("150"), "component_oracle", "extend_subscription", "#7#"
        )

    def test_pays_from_a_bucket(self) -> None:
        manifest = self._manifest()

        call = manifest.find("extend_subscription")
        assert call is not None
        assert call.address == "component_oracle"
        assert call.args == (NonFungibleLocalIdValue("#7#"), BucketValue("payment"))

        withdraw = manifest.find("withdraw")
        assert withdraw is not None
        assert withdraw.args == (AddressValue("resource_xrd"), DecimalValue(Decimal("150")))

        deposit = manifest.find("deposit_batch")
        assert deposit is not None
        assert deposit.args == (ExpressionValue("ENTIRE_WORKTOP"),)

    def test_renders_worktop_take(self) -> None:
        rendered = self._manifest().with_fee_lock(ACCOUNT, Decimal(10)).render()

        assert 'TAKE_ALL_FROM_WORKTOP\n    Address("resource_xrd")\n    Bucket("payment")\n;' in rendered
        assert rendered.index("withdraw") < rendered.index("TAKE_ALL_FROM_WORKTOP") < rendered.index("extend_subscription")
        assert rendered.startswith("CALL_METHOD\n    Address(\"account_bot\")\n    \"lock_fee\"")
        assert 'Expression("ENTIRE_WORKTOP")' in rendered
