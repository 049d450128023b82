import pytest

from backtest_runner import (
	DEFAULT_GRID,
	buy_and_hold_profit,
	find_optimal_settings,
	main,
	max_drawdown,
	read_price_csv,
	run_headless_simulation,
)
from models import PricePoint, Settings, TradeType


def points_from(prices):
	return [PricePoint(time=i * 60_000, price=p) for i, p in enumerate(prices)]


def v_shape():
	return points_from([200 - i for i in range(30)] + [172 + i for i in range(30)])


def test_max_drawdown():
	assert max_drawdown([100, 120, 90, 130, 125]) == 30
	assert max_drawdown([]) == 0.0


def test_buy_and_hold_profit():
	assert buy_and_hold_profit(1000, points_from([100, 150])) == pytest.approx(500)
	assert buy_and_hold_profit(1000, points_from([100])) == 0.0


def test_headless_simulation_matches_engine_rules():
	summary = run_headless_simulation(Settings(dips_sensitivity=100), v_shape())
	assert summary.buy_count >= 1
	first = summary.trades[0]
	assert first.type is TradeType.BUY
	assert first.price == 177
	assert summary.buy_count == sum(1 for t in summary.trades if t.type is TradeType.BUY)
	assert summary.lowest_account_value <= 1000 <= summary.highest_account_value
	assert summary.buy_and_hold_profit == pytest.approx(1000 / 200 * 201 - 1000)


def test_headless_simulation_on_empty_data():
	summary = run_headless_simulation(Settings(), [])
	assert summary.total_profit == 0.0
	assert summary.trades == []
	assert summary.max_drawdown == 0.0


def test_optimizer_runs_every_combination():
	grid = {"risk_level": [10, 90], "dips_sensitivity": [100], "stop_loss_percentage": [5], "sell_trigger_percentage": [0]}
	progress = []
	result = find_optimal_settings(Settings(), v_shape(), grid=grid, progress=progress.append)

	assert result.simulations_run == 2
	assert progress[-1] == 100
	assert set(result.optimal_settings) == {"riskLevel", "dipsSensitivity", "stopLossPercentage", "sellTriggerPercentage"}
	best = run_headless_simulation(
		Settings(risk_level=result.optimal_settings["riskLevel"], dips_sensitivity=100), v_shape()
	)
	assert result.best_profit == pytest.approx(best.total_profit)


def test_optimizer_sorts_input_by_time():
	grid = {"risk_level": [90], "dips_sensitivity": [100], "stop_loss_percentage": [5], "sell_trigger_percentage": [0]}
	ordered = find_optimal_settings(Settings(), v_shape(), grid=grid)
	shuffled = find_optimal_settings(Settings(), list(reversed(v_shape())), grid=grid)
	assert shuffled.best_profit == pytest.approx(ordered.best_profit)


def test_optimizer_needs_two_points():
	with pytest.raises(ValueError):
		find_optimal_settings(Settings(), points_from([100]))


def test_default_grid_size():
	total = 1
	for values in DEFAULT_GRID.values():
		total *= len(values)
	assert total == 9 * 9 * 4 * 5


def test_read_price_csv_handles_timestamp_formats(tmp_path):
	path = tmp_path / "prices.csv"
	path.write_text(
		"timestamp,open,high,low,close,volume\n"
		"2024-01-01T00:02:00Z,1,1,1,103.0,5\n"
		"1704067200,1,1,1,101.0,5\n"
		"1704067260000,1,1,1,102.0,5\n"
		"garbage,1,1,1,100.0,5\n"
	)
	points = read_price_csv(str(path))
	assert [p.price for p in points] == [101.0, 102.0, 103.0]
	assert [p.time for p in points] == [1704067200000, 1704067260000, 1704067320000]


def test_read_price_csv_requires_columns(tmp_path):
	path = tmp_path / "bad.csv"
	path.write_text("a,b\n1,2\n")
	with pytest.raises(ValueError):
		read_price_csv(str(path))


def test_cli_prints_summary(tmp_path, capsys):
	path = tmp_path / "prices.csv"
	rows = ["time,price"] + [f"{1704067200 + i * 60},{p.price}" for i, p in enumerate(v_shape())]
	path.write_text("\n".join(rows) + "\n")
	main([str(path), "--dips-sensitivity", "100"])
	out = capsys.readouterr().out
	assert "==== Summary ====" in out
	assert "MACD Crossover" in out
