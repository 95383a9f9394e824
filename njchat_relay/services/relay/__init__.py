"""
Streaming inference relay.

chunk_decoder      byte stream -> protocol lines
content_router     answer / <think> reasoning classification
usage_accumulator  token and latency figures
relay_session      one user turn: stream, route, persist once
chat_relay_service turn assembly on top of the conversation store
"""
