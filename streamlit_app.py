import streamlit as st

from config import Settings
from dashboard import ApiError, SplitClient, items_frame, participants_frame, summary_frame

BASE_URL = st.secrets.get("backend_url", Settings.from_env().backend_url)
client = SplitClient(BASE_URL)

st.title("Bill Settlement Dashboard")

# Bill lookup
st.header("Bill")
bill_id = st.number_input("Bill ID", min_value=1, step=1)
viewer_id = st.number_input("Your user ID (optional)", min_value=0, step=1)

view = None
if st.button("Load Bill"):
    try:
        view = client.bill_view(int(bill_id), int(viewer_id) or None)
    except ApiError as e:
        st.error(f"Error: {e.message}")

if view:
    st.subheader(f"{view['bill_name']} ({view['bill_code']})")
    st.write(f"Total {view['total_amount']} {view['currency']} - status {view['status']}")
    st.write(f"Deadline {view['deadline']}" + (" (expired)" if view["is_expired"] else ""))

    st.subheader("Participants")
    st.dataframe(participants_frame(view))

    st.subheader("Items")
    st.dataframe(items_frame(view))

    st.subheader("Payment Summary")
    st.dataframe(summary_frame(view))

# Join
st.header("Join Bill")
code = st.text_input("Bill code")
join_user = st.number_input("User ID", min_value=1, step=1, key="join_user")
if st.button("Join"):
    try:
        r = client.join(code, int(join_user))
        st.success(f"Joined. Your share: {r['your_share']}")
    except ApiError as e:
        st.error(f"Error: {e.message}")

# Pay
st.header("Pay Your Share")
participant_id = st.number_input("Participant ID", min_value=1, step=1)
amount = st.number_input("Amount", min_value=0.0)
pin = st.text_input("PIN", type="password")
scheduled = st.text_input("Scheduled date (ISO, optional)")
if st.button("Pay"):
    try:
        r = client.pay(int(participant_id), amount, pin, scheduled or None)
        st.success(f"Paid: {r['transaction_id']} ({r['status']})")
    except ApiError as e:
        st.error(f"Error: {e.message}")
