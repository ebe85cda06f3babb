from datetime import datetime

from .models import CycleQuota, QuotaAggregate


def _format_datetime(dt: datetime | None) -> str | None:
    """Format datetime in local timezone and locale."""
    if dt is None:
        return None
    # Convert to local timezone
    local_dt = dt.astimezone()
    return local_dt.strftime("%Y-%m-%d %H:%M:%S %Z")


def format_amount(value: float | None) -> str:
    """Compact amount: 1234 -> '1.2K', None -> '--'."""
    if value is None:
        return "--"
    if value >= 1000:
        return f"{value / 1000:.1f}K"
    return f"{value:.0f}"


def format_plan(plan: str | None) -> str | None:
    if not plan:
        return None
    known = {
        "plus": "Plus",
        "pro": "Pro",
        "free": "Free",
        "team": "Team",
        "business": "Business",
        "enterprise": "Enterprise",
        "active": "Subscribed",
    }
    return known.get(plan.lower(), plan.title())


def _format_cycle(label: str, cycle: CycleQuota) -> list[str]:
    if not cycle.has_data:
        return []
    window = f" ({cycle.window})" if cycle.window else ""
    lines = [f"    - {label}{window}:"]
    if cycle.is_percentage_only:
        lines[0] += f" {cycle.usage_percentage:.0f}% used"
    elif cycle.total is not None or cycle.used is not None or cycle.remaining is not None:
        percentage_str = f" ({cycle.usage_percentage:.1f}%)" if cycle.total else ""
        lines[0] += (
            f" {format_amount(cycle.used)}/{format_amount(cycle.total)}{percentage_str}"
            f" (remaining: {format_amount(cycle.remaining)})"
        )
    if cycle.reset_at:
        estimated = " (estimated)" if cycle.is_estimated else ""
        lines.append(f"      Reset: {_format_datetime(cycle.reset_at)}{estimated}")
    return lines


def format_usage_simple(aggregates: list[QuotaAggregate]) -> str:
    """Format quota aggregates in a simple readable format."""
    lines = []
    for aggregate in aggregates:
        lines.append(f"\n{'='*60}")
        lines.append(f"Account: {aggregate.account_name} [{aggregate.provider.display_name}]")
        plan = format_plan(aggregate.subscription_plan)
        if plan:
            lines.append(f"Plan: {plan}")

        if aggregate.error_message:
            lines.append(f"\n  Error: {aggregate.error_message}")
            continue

        cycle_lines = _format_cycle("Primary", aggregate.primary) + _format_cycle(
            "Secondary", aggregate.secondary
        )
        if cycle_lines:
            lines.append("\n  Quota:")
            lines.extend(cycle_lines)
        else:
            lines.append("\n  No quota data available.")

    lines.append(f"\n{'='*60}")
    return "\n".join(lines)
