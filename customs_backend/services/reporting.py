from __future__ import annotations

import math
from datetime import date, timedelta
from typing import Sequence

import numpy as np
import pandas as pd

from customs_backend.errors import ValidationError
from customs_backend.schemas import UserDailyCreations, UserPerformance

PROFILE_WINDOW_DAYS = 120
WORKING_HOURS = range(6, 20)


def _round(value: float) -> int:
    # half-up, the way the dashboard has always displayed scores
    return int(math.floor(value + 0.5))


def _cv(values: np.ndarray) -> float:
    mean = float(values.mean()) if values.size else 0.0
    if mean <= 0:
        return 0.0
    return float(values.std()) / mean


def consistency_from_active_days(values: Sequence[float]) -> int:
    """Stability of daily output over active (non-zero) days, 0-100."""
    arr = np.asarray(values, dtype=float)
    active = arr[arr > 0]
    if active.size < 2:
        return 50
    return _round(float(np.clip(100 - _cv(active) * 50, 0, 100)))


def burnout_risk(values: Sequence[float]) -> bool:
    arr = np.asarray(values, dtype=float)
    active = arr[arr > 0]
    if active.size < 3:
        return False
    avg = float(active.mean())
    if avg <= 5:
        return False
    return bool((active[-3:] > avg * 1.3).all())


def build_leaderboard(users: Sequence[UserDailyCreations], window_days: int = 10) -> dict:
    all_dates = sorted({d for u in users for d in u.daily_file_creations})
    relevant = all_dates[-window_days:]

    if not users:
        return {
            "users": [],
            "global_stats": {"total_files": 0, "total_import": 0, "total_export": 0, "total_burnout": 0},
            "dates": [],
        }

    frame = (
        pd.DataFrame([u.daily_file_creations for u in users], index=range(len(users)))
        .reindex(columns=relevant)
        .fillna(0)
        .astype(int)
    )

    rows = []
    for pos, u in enumerate(users):
        values = frame.loc[pos].to_numpy()
        active_days = int((values > 0).sum())
        total = int(values.sum())
        rows.append(
            {
                "user": u.user,
                "display_name": u.user.replace(".", " "),
                "team": u.team,
                "total_files": total,
                "active_days": active_days,
                "efficiency": round(total / active_days, 2) if active_days else 0.0,
                "consistency_score": consistency_from_active_days(values),
                "burnout_risk": burnout_risk(values),
                "daily_file_creations": {d.isoformat(): int(v) for d, v in zip(relevant, values)},
            }
        )

    board = pd.DataFrame(rows)
    global_stats = {
        "total_files": int(board["total_files"].sum()),
        "total_import": int(board.loc[board["team"].str.lower() == "import", "total_files"].sum()),
        "total_export": int(board.loc[board["team"].str.lower() == "export", "total_files"].sum()),
        "total_burnout": int(board["burnout_risk"].sum()),
    }
    rows.sort(key=lambda r: r["total_files"], reverse=True)
    return {
        "users": rows,
        "global_stats": global_stats,
        "dates": [d.isoformat() for d in relevant],
    }


def efficiency_score(avg_files_per_day: float, modifications_per_file: float, auto_percent: float) -> int:
    output_score = min(avg_files_per_day * 8, 50)
    complexity_bonus = min(modifications_per_file * 1.5, 25)
    automation_score = auto_percent * 0.25
    return _round(min(100, output_score + complexity_bonus + automation_score))


def consistency_rating(daily_files: Sequence[int]) -> dict:
    if len(daily_files) < 5:
        return {"score": 50, "label": "Insufficient Data"}
    recent = np.asarray(daily_files[-30:], dtype=float)
    files = recent[recent > 0]
    if files.size < 3:
        return {"score": 50, "label": "Insufficient Data"}

    score = float(np.clip(100 - _cv(files) * 100, 0, 100))
    if score >= 80:
        label = "Very Consistent"
    elif score >= 60:
        label = "Consistent"
    elif score >= 40:
        label = "Moderate"
    else:
        label = "Variable"
    return {"score": _round(score), "label": label}


def workload_category(daily_totals: Sequence[int]) -> dict:
    if len(daily_totals) == 0:
        return {"category": "No Data", "description": "No data available"}

    cv = _cv(np.asarray(daily_totals, dtype=float))
    if cv <= 0.3:
        return {
            "category": "Steady Performer",
            "description": "Maintains a balanced rhythm, delivering reliable output day-to-day.",
        }
    if cv >= 0.8:
        return {
            "category": "Spiky Performer",
            "description": "Handles workload in concentrated bursts, excelling at high-volume tasks.",
        }
    return {
        "category": "Flexible Performer",
        "description": "Adapts to demand fluctuations, maintaining efficiency across varying volumes.",
    }


def activity_heatmap(activity_days: dict[date, int], today: date, days: int = PROFILE_WINDOW_DAYS) -> list[dict]:
    index = pd.date_range(end=pd.Timestamp(today), periods=days + 1, freq="D")
    series = pd.Series(
        {pd.Timestamp(d): int(c) for d, c in activity_days.items()}, dtype="int64"
    ).reindex(index, fill_value=0)
    return [
        {"date": ts.date().isoformat(), "count": int(count)}
        for ts, count in series.items()
    ]


def _metrics_frame(performance: UserPerformance) -> pd.DataFrame:
    columns = [
        "day",
        "manual_files_created",
        "automatic_files_created",
        "total_files_handled",
        "modification_count",
        "avg_creation_time",
        "sending_count",
    ]
    if not performance.daily_metrics:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([m.model_dump() for m in performance.daily_metrics], columns=columns)


def build_user_profile(performance: UserPerformance, today: date) -> dict:
    summary = performance.summary
    df = _metrics_frame(performance)
    if not df.empty:
        cutoff = today - timedelta(days=PROFILE_WINDOW_DAYS)
        df = df[df["day"] >= cutoff].sort_values("day", ascending=False)

    daily_metrics = [
        {
            "date": r.day.isoformat(),
            "manual": int(r.manual_files_created),
            "auto": int(r.automatic_files_created),
            "sending": int(r.sending_count),
            "modifications": int(r.modification_count),
            "files": int(r.total_files_handled),
            "avg_time": round(float(r.avg_creation_time), 2) if pd.notna(r.avg_creation_time) else 0.0,
            "modifications_per_file": round(r.modification_count / r.total_files_handled, 2)
            if r.total_files_handled > 0
            else 0.0,
        }
        for r in df.itertuples(index=False)
    ]
    daily_files = [{"date": m["date"], "total": m["files"]} for m in reversed(daily_metrics)]

    companies = sorted(
        ({"company": c, "files": n} for c, n in summary.company_specialization.items()),
        key=lambda c: c["files"],
        reverse=True,
    )
    top_company = companies[0] if companies else {"company": "N/A", "files": 0}
    ratio = summary.manual_vs_auto_ratio

    return {
        "user": {
            "name": performance.user.replace(".", " "),
            "total_files": summary.total_files_handled,
            "total_modifications": summary.total_modifications,
            "manual_percentage": _round(ratio.manual_percent),
            "auto_percentage": _round(ratio.automatic_percent),
            "avg_time": round(summary.avg_creation_time, 2) if summary.avg_creation_time is not None else 0.0,
            "avg_files_per_day": round(summary.avg_files_per_day, 1),
            "most_productive_day": summary.most_productive_day.isoformat()
            if summary.most_productive_day
            else None,
            "most_active_company": top_company["company"],
            "most_active_company_files": top_company["files"],
            "most_active_hour": f"{summary.hour_with_most_activity}:00"
            if summary.hour_with_most_activity is not None
            else None,
            "days_active": summary.days_active,
            "modifications_per_file": round(summary.modifications_per_file, 2),
            "workload_consistency": workload_category([d["total"] for d in daily_files]),
            "efficiency_score": efficiency_score(
                summary.avg_files_per_day, summary.modifications_per_file, ratio.automatic_percent
            ),
        },
        "daily_metrics": daily_metrics,
        "charts": {
            "daily_files": daily_files,
            "company_specialization": companies,
            "manual_vs_auto": [
                {"name": "Manual", "value": _round(ratio.manual_percent)},
                {"name": "Auto", "value": _round(ratio.automatic_percent)},
            ],
            "active_days": activity_heatmap(summary.activity_days, today),
            "file_types": [{"type": t, "count": n} for t, n in summary.file_type_counts.items()],
            "hourly_activity": [
                {"hour": f"{h}:00", "activity": summary.activity_by_hour.get(h, 0)}
                for h in WORKING_HOURS
            ],
        },
    }


def compare_users(performances: Sequence[UserPerformance]) -> dict:
    if len(performances) < 2:
        raise ValidationError("At least 2 users required")

    results = []
    for perf in performances:
        summary = perf.summary
        ordered = sorted(perf.daily_metrics, key=lambda m: m.day)
        files = [m.manual_files_created + m.automatic_files_created for m in ordered]
        auto_percent = _round(summary.manual_vs_auto_ratio.automatic_percent)
        results.append(
            {
                "user": {
                    "id": perf.user,
                    "name": perf.user.replace(".", " ").title(),
                    "total_files": summary.total_files_handled,
                    "avg_files_per_day": round(summary.avg_files_per_day, 1),
                    "modifications_per_file": round(summary.modifications_per_file, 1),
                    "auto_percentage": auto_percent,
                    "manual_percentage": _round(summary.manual_vs_auto_ratio.manual_percent),
                    "days_active": summary.days_active,
                    "most_active_company": max(
                        summary.company_specialization,
                        key=summary.company_specialization.get,
                        default="N/A",
                    ),
                },
                "efficiency": efficiency_score(
                    summary.avg_files_per_day, summary.modifications_per_file, auto_percent
                ),
                "consistency": consistency_rating(files),
            }
        )

    top = max(results, key=lambda r: r["efficiency"])
    steady = max(results, key=lambda r: r["consistency"]["score"])
    return {
        "users": results,
        "top_performer": top["user"]["id"],
        "most_consistent": steady["user"]["id"],
    }
