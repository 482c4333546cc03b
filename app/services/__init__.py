from app.services.message_service import (
    count_user_messages,
    format_transcript,
    get_conversation_history,
    get_session_messages,
    save_message,
)
