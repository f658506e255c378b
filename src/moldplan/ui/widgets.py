from __future__ import annotations

from contextlib import contextmanager

from nicegui import ui


_THEME_APPLIED = False


def apply_theme() -> None:
    ui.colors(
        primary="#2563eb",  # blue-600
        secondary="#0ea5e9",  # sky-500
        positive="#16a34a",  # green-600
        negative="#dc2626",  # red-600
        warning="#f59e0b",  # amber-500
    )
    ui.add_css(
        """
        body { background: #f8fafc; }
        .mp-container { max-width: 1400px; margin: 0 auto; padding: 16px; }
        .mp-header { border-bottom: 1px solid rgba(15, 23, 42, 0.08); }
        .mp-table .q-table th, .mp-table .q-table td { padding: 6px 8px; }
        """
    )


def ensure_theme() -> None:
    """Apply theme once, but only when called from within a page context."""
    global _THEME_APPLIED
    if _THEME_APPLIED:
        return
    apply_theme()
    _THEME_APPLIED = True


@contextmanager
def page_container():
    with ui.element("div").classes("mp-container"):
        yield


def render_header(title: str) -> None:
    ensure_theme()
    with ui.header().classes("mp-header bg-white text-slate-900"):
        with ui.row().classes("w-full items-center justify-between gap-4 px-4 py-2"):
            ui.label(title).classes("text-xl md:text-2xl font-semibold leading-none")


def fmt_dt(value: str | None) -> str:
    """ISO timestamp -> 'YYYY-MM-DD HH:MM'."""
    if not value:
        return ""
    return str(value).replace("T", " ")[:16]
