"""Status command."""

from . import cli
from .shared import console, key_value_table


@cli.command()
def status():
    """Show correlation and quota state from the data directory."""
    from linecord.config import load_settings
    from linecord.correlation import CorrelationStore
    from linecord.quota import QuotaGovernor

    settings = load_settings()

    store = CorrelationStore(settings.correlation_file, max_entries=settings.correlation_max_entries)
    store.load()
    stats = store.get_stats()
    console.print(key_value_table("Correlations", {
        "File": settings.correlation_file,
        "LINE → Discord": stats["line_to_discord"],
        "Discord → LINE": stats["discord_to_line"],
        "Last 24h": stats["last_day"],
        "Last 7 days": stats["last_week"],
        "Limit": stats["max_entries"],
    }))

    quota = QuotaGovernor(
        capacity=settings.quota_capacity,
        safety_margin=settings.quota_safety_margin,
        urgent_keywords=settings.urgent_keywords,
        alert_thresholds=settings.alert_thresholds,
        timezone=settings.quota_timezone,
        state_path=settings.quota_state_file,
    )
    q = quota.get_status()
    style = "red" if q["limit_reached"] else ("yellow" if q["alerted_tiers"] else "green")
    console.print(key_value_table("LINE quota", {
        "Period": q["period"],
        "Sent": f"[{style}]{q['sent']}/{q['capacity']}[/{style}] ({q['usage_percent']}%)",
        "Remaining": q["remaining"],
        "Hard limit": q["hard_limit"],
        "Alerts": ", ".join(q["alerted_tiers"]) or "none",
        "Resets": q["reset_at"],
    }))

    if settings.channel_links:
        console.print(key_value_table("Channel links", settings.channel_links))
    else:
        console.print("[dim]No channel links configured (LINECORD_CHANNEL_LINKS).[/dim]")
