from pydantic_settings import BaseSettings


class GatewaySettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "info"
    max_sessions: int = 50
    min_audio_frame_bytes: int = 100
    close_grace_s: float = 30.0
    audio_queue_frames: int = 64

    model_config = {"env_prefix": "GATEWAY_"}


class SpeechSettings(BaseSettings):
    provider: str = "google"  # google / websocket
    google_credentials_path: str = ""
    asr_ws_url: str = "ws://asr:8001/stream"

    language_code: str = "en-US"
    model: str = "latest_long"
    sample_rate: int = 16000
    enable_automatic_punctuation: bool = True
    speech_context_phrases: list[str] = [
        "what", "where", "when", "how", "why", "who",
        "is", "are", "the", "in", "at", "on",
        "can", "could", "would", "should",
        "tell", "explain", "describe",
        "capital", "city", "country", "state",
        "weather", "temperature", "forecast",
        "time", "date", "day", "month", "year",
    ]
    speech_context_boost: float = 15.0

    silence_threshold: float = 0.005
    silence_duration_ms: int = 800
    bridge_buffer_frames: int = 4
    stream_ready_delay_s: float = 0.1
    send_retry_delay_s: float = 0.1
    send_max_attempts: int = 50
    stall_bridge_attempts: int = 10  # unwritable retries before the stream is replaced

    model_config = {"env_prefix": "STT_"}


class LLMSettings(BaseSettings):
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model_name: str = "gpt-3.5-turbo"
    temperature: float = 0.7
    max_tokens: int = 500
    timeout_s: float = 30.0
    retry_delay_s: float = 1.0
    max_retries: int = 1
    history_size: int = 20

    model_config = {"env_prefix": "LLM_"}
