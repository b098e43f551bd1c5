import unittest
from unittest.mock import MagicMock, patch

from data.database import ABTest, Variant
from services.aggregation import ConversionCounts
from services.errors import InsufficientData
from services.significance import compare_to_control, calculate_significance


def counts(name, sample_size, conversions, is_control=False, variant_id=1):
    return ConversionCounts(
        variant=Variant(id=variant_id, name=name, display_name=name, is_control=is_control, traffic_weight=50),
        sample_size=sample_size,
        conversions=conversions,
    )


class TestCompareToControl(unittest.TestCase):

    def test_clear_winner_is_significant(self):
        result = compare_to_control(counts("control", 1000, 100, True), counts("red_button", 1000, 150),
                                    minimum_sample_size=1000)

        self.assertTrue(result.is_significant)
        self.assertGreater(result.z_score, 0)
        self.assertAlmostEqual(result.lift_percentage, 50.0)
        self.assertAlmostEqual(result.control_rate, 0.10)
        self.assertAlmostEqual(result.treatment_rate, 0.15)
        self.assertAlmostEqual(result.confidence_level, (1 - result.p_value) * 100)
        self.assertTrue(result.meets_minimum_sample)

    def test_small_difference_is_not_significant(self):
        result = compare_to_control(counts("control", 1000, 100, True), counts("red_button", 1000, 102))

        self.assertFalse(result.is_significant)
        self.assertGreater(result.p_value, 0.05)

    def test_alpha_controls_the_decision(self):
        control, treatment = counts("control", 1000, 100, True), counts("red_button", 1000, 125)

        self.assertTrue(compare_to_control(control, treatment, alpha=0.10).is_significant)
        self.assertFalse(compare_to_control(control, treatment, alpha=0.01).is_significant)

    def test_zero_control_rate(self):
        result = compare_to_control(counts("control", 500, 0, True), counts("red_button", 500, 0))

        self.assertEqual(result.lift_percentage, 0.0)
        self.assertEqual(result.z_score, 0.0)
        self.assertEqual(result.p_value, 1.0)
        self.assertFalse(result.is_significant)

    def test_zero_control_rate_with_conversions(self):
        result = compare_to_control(counts("control", 500, 0, True), counts("red_button", 500, 10))

        self.assertEqual(result.lift_percentage, 100.0)
        self.assertGreater(result.z_score, 0)


class TestCalculateSignificance(unittest.TestCase):

    def setUp(self):
        self.mock_db = MagicMock()
        self.test = ABTest(id=1, name="checkout_button_color", statistical_significance=99.0,
                           minimum_sample_size=100)

    @patch("services.significance.conversion_counts")
    @patch("services.significance.registry.get_test")
    def test_alpha_from_confidence_level(self, mock_get_test, mock_counts):
        mock_get_test.return_value = self.test
        mock_counts.return_value = [
            counts("red_button", 1000, 125, variant_id=2),
            counts("control", 1000, 100, True, variant_id=1),
        ]

        report = calculate_significance(self.mock_db, "checkout_button_color")

        self.assertEqual(report.alpha, 0.01)
        self.assertEqual(report.control_variant, "control")
        self.assertEqual([r.variant_name for r in report.statistical_analysis], ["red_button"])
        # p is about 0.07: significant at 90%, not at 99%
        self.assertFalse(report.statistical_analysis[0].is_significant)
        mock_counts.assert_called_once_with(self.mock_db, self.test, "conversion")

    @patch("services.significance.conversion_counts")
    @patch("services.significance.registry.get_test")
    def test_single_group_is_insufficient(self, mock_get_test, mock_counts):
        mock_get_test.return_value = self.test
        mock_counts.return_value = [counts("control", 10, 1, True)]

        with self.assertRaisesRegex(InsufficientData, "Not enough variants"):
            calculate_significance(self.mock_db, "checkout_button_color", metric_name="signup")


if __name__ == "__main__":
    unittest.main()
