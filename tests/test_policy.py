"""
Tests for typed Windows Update policy documents.
"""

import pytest

from device_dna.arbiter import Authority, arbitrate
from device_dna.policy import (
    MDMUpdatePolicy,
    PolicyKind,
    WindowsUpdateAUPolicy,
    decode_au_options,
    decode_days,
    decode_flag,
    decode_hour,
    parse_policy,
    update_evidence,
)


AU_PATH = r"HKLM\SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate\AU"


class TestDecoders:

    @pytest.mark.parametrize("value,expected", [
        (4, "Auto download and schedule install"),
        ("2", "Notify before download"),
        (6, "Unknown (6)"),
    ])
    def test_au_options(self, value, expected):
        assert decode_au_options(value) == expected

    def test_au_options_not_a_number(self):
        assert decode_au_options("abc") is None

    def test_flag(self):
        assert decode_flag(1) == "Enabled"
        assert decode_flag(0) == "Disabled"

    def test_days_and_hour(self):
        assert decode_days(7) == "7 days"
        assert decode_hour(3) == "03:00"
        assert decode_hour(None) is None


class TestParsePolicy:

    def test_known_and_unrecognized(self):
        doc = parse_policy("windows_update_au", {
            "UseWUServer": 1,
            "AUOptions": 4,
            "SomeFutureSetting": "x",
            "PSPath": "Microsoft.PowerShell.Core\\Registry::HKLM",
        })

        assert isinstance(doc, WindowsUpdateAUPolicy)
        assert doc.use_wu_server == 1
        assert doc.au_options == 4
        assert doc.unrecognized == {"SomeFutureSetting": "x"}

    def test_accepts_enum_kind(self):
        doc = parse_policy(PolicyKind.MDM_UPDATE, {})
        assert isinstance(doc, MDMUpdatePolicy)
        assert doc.known_values() == {}

    def test_none_values(self):
        doc = parse_policy("delivery_optimization", None)
        assert doc.settings() == []

    def test_wrong_type_moves_to_unrecognized(self):
        """A known name with a value that does not fit is kept, not dropped."""
        doc = parse_policy("windows_update_au", {"AUOptions": "four", "NoAutoUpdate": 0})

        assert doc.au_options is None
        assert doc.no_auto_update == 0
        assert doc.unrecognized == {"AUOptions": "four"}

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            parse_policy("firewall", {})

    def test_mdm_provider_metadata(self):
        doc = parse_policy("mdm_update", {
            "DeferQualityUpdatesPeriodInDays": 7,
            "DeferQualityUpdatesPeriodInDays_ProviderSet": 1,
            "DeferQualityUpdatesPeriodInDays_WinningProvider": "5F3C8D2E-ENROLLMENT",
        })

        assert doc.known_values() == {"DeferQualityUpdatesPeriodInDays": 7}
        assert doc.unrecognized == {}
        assert doc.winning_providers == {"DeferQualityUpdatesPeriodInDays": "5F3C8D2E-ENROLLMENT"}


class TestSettings:

    def test_rows_sorted_and_decoded(self):
        doc = parse_policy("windows_update_au", {"UseWUServer": 1, "AUOptions": 4, "zExtra": 9})
        rows = doc.settings()

        assert [r["Setting"] for r in rows] == ["AUOptions", "UseWUServer", "zExtra"]
        assert rows[0] == {
            "Hive": AU_PATH,
            "Setting": "AUOptions",
            "Value": 4,
            "Decoded": "Auto download and schedule install",
            "Known": True,
            "Description": "Automatic update behaviour",
        }
        assert rows[1]["Decoded"] == "Enabled"
        assert rows[2]["Known"] is False
        assert rows[2]["Decoded"] == "9"

    def test_setting_without_decoder_shows_raw(self):
        doc = parse_policy("windows_update", {"WUServer": "http://wsus:8530"})
        assert doc.setting_map() == {"WUServer": {"Value": "http://wsus:8530", "Decoded": "http://wsus:8530"}}


class TestUpdateEvidence:

    def test_wsus_evidence(self):
        docs = [
            parse_policy("windows_update", {"WUServer": "http://wsus:8530", "TargetGroup": "Pilot"}),
            parse_policy("windows_update_au", {"UseWUServer": 1, "NoAutoUpdate": 0}),
        ]
        evidence = update_evidence(docs)

        assert {e.signal for e in evidence} == {"WUServer", "UseWUServer"}
        assert all(e.category == Authority.WSUS for e in evidence)
        assert all(e.weight == 40 for e in evidence)
        flag = next(e for e in evidence if e.signal == "UseWUServer")
        assert flag.source == AU_PATH + "\\UseWUServer"
        assert flag.note == "Enabled"

    def test_mdm_update_service_url_is_wu_server(self):
        doc = parse_policy("mdm_update", {"UpdateServiceUrl": "https://contoso.eus.wu.manage.microsoft.com"})
        evidence = doc.update_evidence()

        assert len(evidence) == 1
        assert evidence[0].signal == "WUServer"
        assert evidence[0].category == Authority.ESUS
        assert evidence[0].source.endswith("\\UpdateServiceUrl")

    def test_esus_scenario(self):
        """WSUS flag pointing at the Intune ESUS endpoint with deferrals resolves to ESUS."""
        docs = [
            parse_policy("windows_update", {"WUServer": "https://contoso.eus.wu.manage.microsoft.com"}),
            parse_policy("windows_update_au", {"UseWUServer": 1}),
            parse_policy("mdm_update", {"DeferFeatureUpdatesPeriodInDays": 30}),
        ]
        result = arbitrate(update_evidence(docs))

        assert result.authority == Authority.ESUS
        assert not result.is_co_managed

    def test_delivery_optimization_is_not_evidence(self):
        doc = parse_policy("delivery_optimization", {"DODownloadMode": 1})
        assert doc.update_evidence() == []
        assert doc.settings()[0]["Decoded"] == "LAN peering (same NAT)"
