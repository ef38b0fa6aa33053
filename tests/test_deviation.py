"""
Tests for deviation analysis.
"""
from datetime import date, timedelta
from decimal import Decimal

import pytest

from fuel_meter_guard.config.loader import DeviationConfig
from fuel_meter_guard.core.deviation import DeviationSeverity, deviation_percent, mean_volume
from fuel_meter_guard.core.errors import ValidationError

from conftest import MANAGER, PRODUCT, STATION, record_day

SPIKE_DAY = date(2024, 1, 14)


def _history_then_spike(service, pump_id, spike_volume=250.0):
    """Seven days of 100 L ending the day before SPIKE_DAY, then the spike."""
    meter = 10000.0
    for offset in range(7, 0, -1):
        record_day(service, pump_id, SPIKE_DAY - timedelta(days=offset), meter, meter + 100.0)
        meter += 100.0
    return record_day(service, pump_id, SPIKE_DAY, meter, meter + spike_volume)


class TestDeviationMath:
    """Test the percentage helpers."""

    def test_deviation_percent(self):
        assert deviation_percent(Decimal("250.0"), Decimal("100")) == Decimal("150.00")
        assert deviation_percent(Decimal("80.0"), Decimal("100")) == Decimal("-20.00")

    def test_no_average_means_zero(self):
        assert deviation_percent(Decimal("250.0"), None) == Decimal("0.00")
        assert deviation_percent(Decimal("250.0"), Decimal("0")) == Decimal("0.00")

    def test_mean_volume_empty(self):
        assert mean_volume([]) is None

    @pytest.mark.parametrize("deviation,expected", [
        (Decimal("5"), DeviationSeverity.NORMAL),
        (Decimal("20"), DeviationSeverity.MODERATE),
        (Decimal("-35"), DeviationSeverity.HIGH),
        (Decimal("50"), DeviationSeverity.CRITICAL),
    ])
    def test_severity_bands(self, service, deviation, expected):
        assert service.analyzer.severity(deviation) == expected


class TestDeviationOnCalculation:
    """Test the deviation stored with each calculation."""

    def test_first_day_has_zero_deviation(self, service, pump):
        calc = record_day(service, pump.id, SPIKE_DAY, 1000.0, 1250.0)
        assert calc.deviation_from_average == Decimal("0.00")

    def test_spike_against_trailing_average(self, service, pump):
        spike = _history_then_spike(service, pump.id)

        assert spike.volume_dispensed == Decimal("250.0")
        assert spike.deviation_from_average == Decimal("150.00")

    def test_day_not_part_of_own_baseline(self, service, pump):
        spike = _history_then_spike(service, pump.id)
        assert service.analyzer.average(pump.id, before_date=SPIKE_DAY) == Decimal("100")
        assert service.analyzer.average(pump.id, before_date=SPIKE_DAY + timedelta(days=1)) > Decimal("100")
        assert spike.deviation_from_average == Decimal("150.00")

    def test_lookback_window_bounds_average(self, service, pump):
        record_day(service, pump.id, SPIKE_DAY - timedelta(days=20), 1000.0, 5000.0)
        spike = _history_then_spike(service, pump.id)
        assert spike.deviation_from_average == Decimal("150.00")


class TestFindDeviations:
    """Test the station deviation report."""

    def test_included_at_low_threshold(self, service, pump):
        _history_then_spike(service, pump.id)

        findings = service.analyzer.find_deviations(STATION, threshold_percent=20)

        assert len(findings) == 1
        finding = findings[0]
        assert finding.calculation.calculation_date == SPIKE_DAY
        assert finding.pump_label == "Pump 1"
        assert finding.average_volume == Decimal("100")
        assert finding.deviation_percent == Decimal("150.00")
        assert finding.severity == DeviationSeverity.CRITICAL

    def test_excluded_at_high_threshold(self, service, pump):
        _history_then_spike(service, pump.id)
        assert service.analyzer.find_deviations(STATION, threshold_percent=200) == []

    def test_default_threshold_is_moderate_band(self, service, pump):
        _history_then_spike(service, pump.id, spike_volume=115.0)
        assert service.analyzer.find_deviations(STATION) == []

    def test_sorted_most_severe_first(self, service, pump):
        second = service.registry.register(STATION, PRODUCT, "Pump 2", 99999.9, date(2023, 1, 1), MANAGER)
        _history_then_spike(service, pump.id, spike_volume=125.0)
        _history_then_spike(service, second.id, spike_volume=300.0)

        findings = service.analyzer.find_deviations(STATION, threshold_percent=10)

        assert [f.pump_label for f in findings] == ["Pump 2", "Pump 1"]
        assert findings[0].severity == DeviationSeverity.CRITICAL
        assert findings[1].severity == DeviationSeverity.MODERATE

    def test_outside_lookback_not_reported(self, service, pump, clock):
        _history_then_spike(service, pump.id)
        clock.advance(days=10)

        assert service.analyzer.find_deviations(STATION, threshold_percent=20) == []
        assert len(service.analyzer.find_deviations(STATION, threshold_percent=20, lookback_days=14)) == 1

    @pytest.mark.parametrize("threshold", [0, -5, "abc"])
    def test_invalid_threshold(self, service, pump, threshold):
        with pytest.raises(ValidationError):
            service.analyzer.find_deviations(STATION, threshold_percent=threshold)

    def test_custom_bands(self, service, pump):
        service.analyzer.config = DeviationConfig(moderate=100, high=200, critical=300)
        _history_then_spike(service, pump.id)

        [finding] = service.analyzer.find_deviations(STATION, threshold_percent=20)
        assert finding.severity == DeviationSeverity.MODERATE
