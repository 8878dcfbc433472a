"""Tests for the database-free CLI commands."""

from typer.testing import CliRunner

from granary.cli import app

runner = CliRunner()


class TestEvaluateCash:
    def test_strong_buy(self) -> None:
        result = runner.invoke(
            app,
            ["evaluate-cash", "-c", "CORN", "-p", "4.50", "-b", "3.80", "--trend", "DOWN", "--rsi", "75"],
        )
        assert result.exit_code == 0
        assert "STRONG_BUY" in result.output

    def test_below_break_even(self) -> None:
        result = runner.invoke(app, ["evaluate-cash", "-c", "WHEAT", "-p", "5.00", "-b", "5.60"])
        assert result.exit_code == 0
        assert "STRONG_SELL" in result.output


class TestIndemnity:
    def test_rp(self) -> None:
        result = runner.invoke(
            app,
            ["indemnity", "--aph", "200", "--actual-yield", "150", "--projected", "5.00", "--harvest", "4.50"],
        )
        assert result.exit_code == 0
        # 200 × 0.80 × 5.00 − 150 × 4.50
        assert "$125.00" in result.output

    def test_invalid_coverage(self) -> None:
        result = runner.invoke(
            app,
            ["indemnity", "--aph", "200", "--actual-yield", "150", "--projected", "5.00",
             "--harvest", "4.50", "--coverage", "82"],
        )
        assert result.exit_code == 1
