import time
from datetime import datetime, timezone

import requests
import streamlit as st

# ─────────────────────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────────────────────

API_BASE = "http://localhost:8000"
NEWS_URL = f"{API_BASE}/news"
SLOTS_URL = f"{API_BASE}/news/slots"
REFRESH_INTERVAL = 300  # seconds

TIME_SLOTS = ["10AM", "3PM", "8PM"]

CATEGORY_EMOJI = {
    "tech":    "💻",
    "finance": "📈",
    "science": "🔬",
    "health":  "🩺",
    "ai":      "🤖",
}

# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def get_slots() -> dict:
    """Fetch slot availability. Returns an empty dict and shows an error on failure."""
    try:
        response = requests.get(SLOTS_URL, timeout=5)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.ConnectionError:
        st.error(
            f"Cannot reach the API at {API_BASE}. "
            "Start it with: `uvicorn main:app --reload`"
        )
        return {}
    except Exception as e:
        st.error(f"Failed to fetch slots: {e}")
        return {}


def get_edition(time_slot: str, force: bool = False) -> dict:
    """Fetch one edition. Rebuilding can take several seconds, hence the long timeout."""
    try:
        response = requests.get(
            NEWS_URL,
            params={"timeSlot": time_slot, "force": str(force).lower()},
            timeout=30,
        )
        body = response.json()
        if response.status_code != 200:
            st.warning(body.get("error") or f"HTTP {response.status_code}")
            return {}
        return body
    except requests.exceptions.ConnectionError:
        st.error(f"Cannot reach the API at {API_BASE}.")
        return {}
    except Exception as e:
        st.error(f"Failed to fetch news: {e}")
        return {}


def time_ago(timestamp: str) -> str:
    """Convert a UTC ISO datetime string to a human-readable 'X ago' label."""
    try:
        dt = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        seconds = max(0, int((datetime.now(timezone.utc) - dt).total_seconds()))
        if seconds < 60:
            return f"{seconds}s ago"
        minutes = seconds // 60
        if minutes < 60:
            return f"{minutes}m ago"
        hours = minutes // 60
        if hours < 24:
            return f"{hours}h ago"
        return f"{hours // 24}d ago"
    except Exception:
        return "unknown"


# ─────────────────────────────────────────────────────────────────────────────
# Page config  (must be the first Streamlit call)
# ─────────────────────────────────────────────────────────────────────────────

st.set_page_config(
    page_title="Newsdesk",
    page_icon="🗞️",
    layout="centered",
)

if "last_refresh" not in st.session_state:
    st.session_state.last_refresh = time.time()

# ─────────────────────────────────────────────────────────────────────────────
# Sidebar
# ─────────────────────────────────────────────────────────────────────────────

slots = get_slots()
open_slots = [s["time"] for s in slots.get("slots", []) if s.get("open")]

with st.sidebar:
    st.title("🗞️ Editions")

    if open_slots:
        selected_slot = st.radio("Time slot", options=open_slots, index=len(open_slots) - 1)
    else:
        selected_slot = None
        st.info(f"No edition yet today. Next: {slots.get('nextSlot', TIME_SLOTS[0])}")

    force = st.button("🔄 Rebuild edition", use_container_width=True)

    last_updated = datetime.fromtimestamp(st.session_state.last_refresh).strftime("%H:%M:%S")
    st.caption(f"Last updated: {last_updated}")

    auto_refresh = st.toggle("Auto-refresh (5 min)", value=True)

# ─────────────────────────────────────────────────────────────────────────────
# Edition
# ─────────────────────────────────────────────────────────────────────────────

st.title("🗞️ Newsdesk")

if selected_slot:
    with st.spinner(f"Loading the {selected_slot} edition..."):
        edition = get_edition(selected_slot, force=force)
    st.session_state.last_refresh = time.time()

    stories = sorted(edition.get("stories", []), key=lambda s: s.get("timestamp") or "", reverse=True)
    st.caption(f"{edition.get('date', '')} · {selected_slot} edition · {len(stories)} stories")
    st.divider()

    for story in stories:
        category = story.get("category", "")
        emoji = CATEGORY_EMOJI.get(category, "📰")

        with st.container():
            st.markdown(
                f"{emoji} **{category}** &nbsp;·&nbsp; "
                f"`{story.get('source', 'unknown')}` &nbsp;·&nbsp; *{time_ago(story.get('timestamp') or '')}*"
            )
            st.markdown(f"### {story.get('headline') or 'Untitled'}")
            if story.get("image"):
                st.image(story["image"], use_container_width=True)
            for paragraph in (story.get("content") or "").split("\n\n"):
                st.write(paragraph)
            st.markdown(f"[Read the original]({story.get('originalUrl', '#')})")
            st.divider()

# ─────────────────────────────────────────────────────────────────────────────
# Auto-refresh: sleep then rerun (page is already rendered above)
# ─────────────────────────────────────────────────────────────────────────────

if auto_refresh:
    time.sleep(REFRESH_INTERVAL)
    st.rerun()
