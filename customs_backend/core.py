# core.py: dashboard KPIs over the declarations table

import pandas as pd

from customs_backend.schemas import TicketStatus
from customs_backend.services.data_layer import DeclarationStore


def get_kpis(store: DeclarationStore, top_n: int = 5):
    """
    KPIs for the declarations overview.

    Returns a dict with:
    - declarations_count
    - status_counts (one entry per ticket status)
    - ticket_creation_rate (CREATED / all declarations)
    - top_principals (by declaration volume)
    - last_sync_at
    """
    df = store.load_frame()
    status_counts = {status.value: 0 for status in TicketStatus}

    if df.empty:
        return {
            "declarations_count": 0,
            "status_counts": status_counts,
            "ticket_creation_rate": 0.0,
            "top_principals": [],
            "last_sync_at": None,
        }

    status_counts.update({k: int(v) for k, v in df["ticket_status"].value_counts().items()})
    declarations_count = int(len(df))
    created = status_counts[TicketStatus.CREATED.value]

    top_principals = (
        df.assign(principal=df["principal"].fillna("UNKNOWN"))
        .groupby("principal", as_index=False)["declaration_id"]
        .count()
        .rename(columns={"declaration_id": "declarations"})
        .sort_values(["declarations", "principal"], ascending=[False, True])
        .head(top_n)
    )

    last_seen = df["last_seen_at"].max()
    return {
        "declarations_count": declarations_count,
        "status_counts": status_counts,
        "ticket_creation_rate": float(created / declarations_count),
        "top_principals": [
            {"principal": r.principal, "declarations": int(r.declarations)}
            for r in top_principals.itertuples(index=False)
        ],
        "last_sync_at": last_seen.isoformat() if pd.notna(last_seen) else None,
    }
