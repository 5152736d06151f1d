from __future__ import annotations

import os
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parent
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import streamlit as st

import compliance_tracking
from compliance_tracking.data.db import connect, init_db
from compliance_tracking.app.pages import (
    checklist_status,
    maintenance,
    reports,
)

st.set_page_config(page_title="compliance tracking", layout="wide")

# --- DB init (once per app start) ---
DATA_DIR = Path(os.getenv("COMPLIANCE_TRACKING_DATA_DIR", "./data"))
DB_PATH = Path(os.getenv("COMPLIANCE_TRACKING_DB_PATH", DATA_DIR / "app.db"))

con = connect(DB_PATH)
init_db(con)

# --- Sidebar navigation ---
st.sidebar.title("Machine Compliance")

build_number = (
    os.getenv("APP_BUILD")
    or os.getenv("BUILD_NUMBER")
    or compliance_tracking.__version__
)
st.sidebar.markdown(
    f"""
    <style>
    [data-testid="stSidebar"] .build-info {{
        position: fixed;
        bottom: 0.5rem;
        left: 1rem;
        color: #6c757d;
        font-size: 0.75rem;
    }}
    </style>
    <div class="build-info">Build: {build_number}</div>
    """,
    unsafe_allow_html=True,
)

PAGES = {
    "Checklist status": lambda: checklist_status.render(con),
    "Maintenance": lambda: maintenance.render(con),
    "Reports": lambda: reports.render(con),
}

params = st.query_params
page_param = params.get("page")

nav_target = st.session_state.pop("nav_to_page", None)
if nav_target:
    st.session_state["sidebar_page_default"] = nav_target
elif page_param in PAGES:
    st.session_state["sidebar_page_default"] = page_param

page_labels = list(PAGES.keys())
default_index = 0
current_page = st.session_state.get("sidebar_page_default")
if current_page in page_labels:
    default_index = page_labels.index(current_page)

selected = st.sidebar.radio("Pages", page_labels, index=default_index, key="sidebar_page")
st.session_state.pop("sidebar_page_default", None)

# --- Render selected page ---
PAGES[selected]()
