"""Tests for quota-aware instance selection."""

import json
from unittest.mock import Mock

import pytest
from hypothesis import given, settings, strategies as st

from gpu_provisioner.core.exceptions import QuotaExhausted, ServiceError
from gpu_provisioner.core.models import PricingModel
from gpu_provisioner.preflight.quota import ON_DEMAND_QUOTA_CODE, SPOT_QUOTA_CODE, QuotaAdvisor
from gpu_provisioner.state.reports import ReportWriter

VCPUS = {
    "g5.4xlarge": 16,
    "g4dn.xlarge": 4,
    "g5.xlarge": 4,
    "g4dn.2xlarge": 8,
    "g5.2xlarge": 8,
}


def quota_inspector(spot, on_demand, offered=None):
    """Inspector answering quota and instance type questions from fixed tables."""
    quotas = {SPOT_QUOTA_CODE: spot, ON_DEMAND_QUOTA_CODE: on_demand}
    inspector = Mock()
    inspector.instance_type_vcpus.side_effect = VCPUS.get
    inspector.quota_value.side_effect = lambda service_code, quota_code, default=None: quotas[quota_code]
    if offered is None:
        inspector.instance_type_offered.return_value = True
    else:
        inspector.instance_type_offered.side_effect = lambda instance_type: instance_type in offered
    return inspector


class TestQuotaAdvisor:
    """Spot first, then on-demand, then smaller alternates."""

    def test_on_demand_when_spot_is_zero(self):
        selection = QuotaAdvisor(quota_inspector(spot=0, on_demand=16), "us-east-1").select("g5.4xlarge")

        assert selection.instance_type == "g5.4xlarge"
        assert selection.pricing_model is PricingModel.ON_DEMAND
        assert not selection.substituted

    def test_spot_preferred(self):
        selection = QuotaAdvisor(quota_inspector(spot=16, on_demand=64), "us-east-1").select("g5.4xlarge")

        assert selection.pricing_model is PricingModel.SPOT
        assert selection.vcpus == 16

    def test_largest_fitting_alternate(self):
        """With only 8 spot vCPUs the first 8-vCPU alternate is chosen."""
        selection = QuotaAdvisor(quota_inspector(spot=8, on_demand=0), "us-east-1").select("g5.4xlarge")

        assert selection.instance_type == "g4dn.2xlarge"
        assert selection.pricing_model is PricingModel.SPOT
        assert selection.substituted
        assert selection.requested_instance_type == "g5.4xlarge"
        assert selection.snapshot.vcpus_required_for_instance_type == 8

    def test_alternates_not_offered_are_skipped(self):
        inspector = quota_inspector(spot=0, on_demand=8, offered={"g5.2xlarge", "g5.xlarge"})

        selection = QuotaAdvisor(inspector, "us-east-1").select("g5.4xlarge")

        assert selection.instance_type == "g5.2xlarge"
        assert selection.pricing_model is PricingModel.ON_DEMAND

    def test_exhausted_writes_quota_report(self, tmp_path):
        """No fitting type raises with a quota increase request and a report."""
        advisor = QuotaAdvisor(quota_inspector(spot=0, on_demand=0), "us-east-1", reports=ReportWriter(tmp_path))

        with pytest.raises(QuotaExhausted) as exc_info:
            advisor.select("g5.4xlarge")

        request = exc_info.value.request
        assert request.suggested_value == 64
        assert request.vcpus_required == 16
        assert request.current_quotas == {"on-demand": 0, "spot": 0}
        assert len(request.cli_commands) == 2
        assert "--desired-value 64" in request.cli_commands[0]
        assert exc_info.value.report_path == tmp_path / "quota-report.json"
        with open(exc_info.value.report_path) as f:
            report = json.load(f)
        assert report["quota_increase_request"]["instance_type"] == "g5.4xlarge"

    def test_suggested_value_covers_large_types(self):
        inspector = quota_inspector(spot=0, on_demand=0)
        inspector.instance_type_vcpus.side_effect = {"p4d.24xlarge": 96}.get

        request = QuotaAdvisor(inspector, "us-east-1").increase_request("p4d.24xlarge")

        assert request.suggested_value == 96

    def test_unknown_instance_type(self):
        with pytest.raises(ServiceError):
            QuotaAdvisor(quota_inspector(spot=16, on_demand=16), "us-east-1").select("g9.huge")

    def test_request_increase_uses_pricing_quota(self):
        inspector = quota_inspector(spot=0, on_demand=0)
        inspector.quotas.request_increase.return_value = "req-123"
        advisor = QuotaAdvisor(inspector, "us-east-1")
        request = advisor.increase_request("g5.4xlarge")

        assert advisor.request_increase(request, PricingModel.SPOT) == "req-123"
        inspector.quotas.request_increase.assert_called_once_with("ec2", SPOT_QUOTA_CODE, 64)

    @settings(max_examples=100, deadline=None)
    @given(
        spot=st.sampled_from([0, 4, 8, 12, 16, 32]),
        on_demand=st.sampled_from([0, 4, 8, 12, 16, 32]),
    )
    def test_selection_always_fits_its_quota(self, spot, on_demand):
        """A selection never needs more vCPUs than its pricing model allows."""
        advisor = QuotaAdvisor(quota_inspector(spot=spot, on_demand=on_demand), "us-east-1")

        try:
            selection = advisor.select("g5.4xlarge")
        except QuotaExhausted:
            assert max(spot, on_demand) < min(VCPUS.values())
            return

        quota = spot if selection.pricing_model is PricingModel.SPOT else on_demand
        assert selection.vcpus <= quota
        if spot >= selection.vcpus:
            assert selection.pricing_model is PricingModel.SPOT
