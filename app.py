import streamlit as st
import base64
import os
from datetime import date

from dashboard_api import DashboardAPIError, DashboardClient, UserContext, uploads_version
from device_status import APPLICATION_TYPES, OFFLINE_SITES, RoleMismatchError, check_role, load_device_status_view
from process_sites import MIN_DAYS_OFFLINE, MissingColumnError
from site_filters import TIME_RANGES, FilterState, apply_filters

# Page configuration
st.set_page_config(
    page_title="Device Status - RTU/RMU Site Dashboard",
    page_icon="📡",
    layout="wide",
    initial_sidebar_state="expanded"
)

# Custom CSS for better styling
st.markdown("""
<style>
    .main-header {
        font-size: 2.5rem;
        font-weight: bold;
        color: #1f77b4;
        text-align: center;
        margin-bottom: 2rem;
    }
    .section-header {
        font-size: 1.5rem;
        font-weight: bold;
        color: #2c3e50;
        margin-top: 2rem;
        margin-bottom: 1rem;
    }
</style>
""", unsafe_allow_html=True)


def create_download_link(df, filename, link_text):
    """Create a download link for a DataFrame"""
    csv = df.to_csv(index=False)
    b64 = base64.b64encode(csv.encode()).decode()
    href = f'<a href="data:file/csv;base64,{b64}" download="{filename}" style="text-decoration: none; color: #1f77b4; font-weight: bold;">{link_text}</a>'
    return href


def current_user():
    """Signed-in user as configured for this deployment."""
    divisions = [d.strip() for d in os.getenv('DASHBOARD_USER_DIVISIONS', '').split(',') if d.strip()]
    return UserContext(
        user_id=os.getenv('DASHBOARD_USER_ID', ''),
        role=os.getenv('DASHBOARD_USER_ROLE', ''),
        divisions=tuple(divisions),
    )


@st.cache_data(show_spinner=False)
def load_view(_client, _files, user, application_type, min_days_offline, version):
    # ``version`` keys the cache; a new or replaced upload changes it
    return load_device_status_view(_client, user, application_type, min_days_offline, files=_files)


def main():
    # Main header
    st.markdown('<h1 class="main-header">📡 Device Status</h1>', unsafe_allow_html=True)

    user = current_user()
    try:
        check_role(user)
    except RoleMismatchError as e:
        st.error(f"❌ {e}")
        return

    client = DashboardClient()

    # Sidebar
    st.sidebar.markdown("## ⚙️ View")
    application_type = st.sidebar.selectbox(
        "Application Type",
        APPLICATION_TYPES,
        index=APPLICATION_TYPES.index(OFFLINE_SITES),
    )
    min_days_offline = st.sidebar.number_input(
        "Minimum days offline",
        min_value=0.0,
        value=float(MIN_DAYS_OFFLINE),
        step=1.0,
    )
    refresh_button = st.sidebar.button("🔄 Refresh", type="primary")

    if refresh_button:
        load_view.clear()

    try:
        files = client.list_uploads()
        with st.spinner("Loading device status data..."):
            view = load_view(client, files, user, application_type, min_days_offline, uploads_version(files))
    except (DashboardAPIError, MissingColumnError) as e:
        st.error(f"❌ Error loading device status data: {str(e)}")
        return

    # Filters
    st.sidebar.markdown("---")
    st.sidebar.markdown("## 🔍 Filters")
    selections = {
        'circle': st.sidebar.multiselect("Circle", view.options.get('circle', [])),
        'division': st.sidebar.multiselect("Division", view.options.get('division', [])),
        'sub_division': st.sidebar.multiselect("Sub Division", view.options.get('sub_division', [])),
    }
    search = st.sidebar.text_input("Search", placeholder="Site code, HRN, status...")
    time_range = st.sidebar.selectbox("Time Range", TIME_RANGES)
    start_date = end_date = None
    if time_range == 'Date Range':
        start_date = st.sidebar.date_input("From", value=None)
        end_date = st.sidebar.date_input("To", value=None)

    state = FilterState(
        selections=selections,
        search=search,
        time_range=time_range,
        start_date=start_date,
        end_date=end_date,
        today=date.today(),
    )
    table = apply_filters(view.status_table, state)

    # Summary
    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Sites in upload", len(view.merged.frame))
    with col2:
        st.metric("Offline sites", len(view.status_table))
    with col3:
        st.metric("Shown", len(table))

    status_tab, merged_tab = st.tabs([
        "📋 Offline Sites",
        "🗂️ Reconciled Data",
    ])

    with status_tab:
        st.markdown('<h2 class="section-header">Offline Sites</h2>', unsafe_allow_html=True)
        if table.empty:
            st.info("No sites match the current filters.")
        else:
            st.dataframe(table, use_container_width=True, hide_index=True)
            st.markdown(create_download_link(
                table,
                "device_status.csv",
                "📥 Download Offline Sites"
            ), unsafe_allow_html=True)

    with merged_tab:
        st.markdown('<h2 class="section-header">Reconciled Device Status Upload</h2>', unsafe_allow_html=True)
        merged = view.merged
        if merged.merged_columns:
            st.caption("Merged columns: " + ", ".join(merged.merged_columns))
        for label, group in merged.groups.items():
            if group is not None:
                st.caption(f"{label}: {group.date_header or 'undated columns'}")
        st.dataframe(merged.frame, use_container_width=True, hide_index=True)
        st.markdown(create_download_link(
            merged.frame,
            "device_status_reconciled.csv",
            "📥 Download Reconciled Data"
        ), unsafe_allow_html=True)


if __name__ == "__main__":
    main()
