from __future__ import annotations

import csv
import io
import json
from typing import Any

SCENARIO_HEADER = [
    "Scenario",
    "Final Price",
    "Probability (%)",
    "In Range",
    "Fees Earned (USD)",
    "Impermanent Loss (%)",
    "Impermanent Loss (USD)",
    "Net Return (USD)",
    "LP Return (USD)",
    "HODL Return (USD)",
    "Advantage vs HODL (USD)",
]


def _num(value: Any, decimals: int) -> str:
    try:
        return f"{float(value):.{decimals}f}"
    except (TypeError, ValueError):
        return ""


def _write(rows: list[list[str]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerows(rows)
    return buf.getvalue()


def scenarios_to_csv(results: dict[str, Any]) -> str:
    rows = [SCENARIO_HEADER]
    for s in results.get("scenario_analysis") or []:
        vs = s.get("lp_vs_hodl") or {}
        rows.append(
            [
                str(s.get("scenario", "")),
                _num(s.get("final_price"), 6),
                _num((s.get("probability") or 0) * 100, 1),
                "Yes" if s.get("in_range") else "No",
                _num(s.get("fees_earned_usd"), 2),
                _num(s.get("impermanent_loss_percent"), 2),
                _num(s.get("impermanent_loss_usd"), 2),
                _num(s.get("net_return_usd"), 2),
                _num(vs.get("lp_return_usd"), 2),
                _num(vs.get("hodl_return_usd"), 2),
                _num(vs.get("advantage_usd"), 2),
            ]
        )
    return _write(rows)


def monte_carlo_to_csv(results: dict[str, Any]) -> str | None:
    mc = results.get("monte_carlo_simulation")
    if not mc:
        return None
    dist = mc.get("price_distribution") or {}
    rows = [
        ["Metric", "Value"],
        ["Trials Run", str(mc.get("trials_run", ""))],
        ["Expected Net Return (USD)", _num(mc.get("expected_net_return_usd"), 2)],
        ["Expected Advantage vs HODL (USD)", _num(mc.get("expected_advantage_vs_hodl_usd"), 2)],
        ["Value at Risk 5th Percentile (USD)", _num(mc.get("value_at_risk_5th_percentile_usd"), 2)],
        ["Value at Risk 95th Percentile (USD)", _num(mc.get("value_at_risk_95th_percentile_usd"), 2)],
        ["Probability of Profit (%)", _num(mc.get("probability_of_profit"), 1)],
        ["Probability Beats HODL (%)", _num(mc.get("probability_beats_hodl"), 1)],
        ["Volatility Used (%)", _num(mc.get("volatility_used"), 2)],
        ["", ""],
        ["Price Distribution", ""],
        ["Minimum", _num(dist.get("min"), 6)],
        ["10th Percentile", _num(dist.get("percentile_10"), 6)],
        ["Median", _num(dist.get("median"), 6)],
        ["90th Percentile", _num(dist.get("percentile_90"), 6)],
        ["Maximum", _num(dist.get("max"), 6)],
    ]
    return _write(rows)


def analysis_to_json(results: dict[str, Any]) -> str:
    return json.dumps(results, ensure_ascii=False, indent=2)
