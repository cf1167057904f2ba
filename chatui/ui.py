from html import escape

from .config import MODEL_ID, TEMPLATES_DIR

UI_TEMPLATE_PATH = TEMPLATES_DIR / "index.html"


def _load_ui_html_template() -> str:
    if not UI_TEMPLATE_PATH.exists():
        raise RuntimeError(f"UI template not found at {UI_TEMPLATE_PATH}")
    return UI_TEMPLATE_PATH.read_text(encoding="utf-8")


def render_ui_html(state: dict) -> str:
    html = _load_ui_html_template()
    return (
        html.replace("__MODEL_ID_VALUE__", escape(state.get("model_id") or MODEL_ID or ""))
        .replace("__MODEL_LOADED_BEFORE__", "true" if state.get("model_loaded_before") else "false")
    )
