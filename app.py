"""
EDUCAFRIC offline sync - Streamlit entry point.

Run with:
    streamlit run app.py
"""

import streamlit as st

from educafric_core.config import load_settings
from educafric_core.errors.handlers import ErrorContext
from educafric_core.logging import setup_logging
from educafric_core.offline import create_offline_service
from educafric_core.ui import render_sync_panel

st.set_page_config(page_title="EDUCAFRIC Offline", page_icon="🎓", layout="wide")

settings = load_settings()
setup_logging(level=settings.log_level, log_to_file=settings.log_to_file)

user_id = int(st.session_state.get("user_id") or st.query_params.get("user", 1))

# One service per browser session
if st.session_state.get("offline_service_user") != user_id:
    previous = st.session_state.get("offline_service")
    if previous is not None:
        previous.close()
    service = create_offline_service(user_id, settings=settings)
    service.start()
    st.session_state["offline_service"] = service
    st.session_state["offline_service_user"] = user_id

service = st.session_state["offline_service"]
render_sync_panel(service)

st.title("Attendance")

with st.form("attendance_form", clear_on_submit=True):
    student_id = st.text_input("Student ID")
    status = st.selectbox("Status", ["present", "absent", "late", "excused"])
    submitted = st.form_submit_button("Record")

if submitted and student_id:
    with ErrorContext("Record attendance", show_success=True, success_message="Attendance saved"):
        service.queue_action(
            "attendance",
            "create",
            {"studentId": student_id, "status": status},
        )

frame = service.get_cached_frame("attendance")
if frame.empty:
    st.caption("No attendance cached on this device yet.")
else:
    st.dataframe(frame, use_container_width=True, hide_index=True)
