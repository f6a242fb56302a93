from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    app_env: str = "local"
    app_log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0

    # Redis Streams (MQTT PUBLISH frames are stored under `redis_packet_field`)
    redis_stream_inbound: str = "translateBefore"
    redis_stream_outbound: str = "translateAfter"
    redis_stream_rejected: str = "translateRejected"
    redis_packet_field: str = "packet"

    # Relay worker
    redis_consumer_group: str = "translators"
    redis_consumer_name: str = "relay-1"
    worker_block_ms: int = 5000
    # Pending (failed) entries idle this long are claimed and processed again
    worker_reclaim_idle_ms: int = 60000

    # Credential provider (speech services)
    speech_client_id: str = Field(
        default="",
        validation_alias=AliasChoices("SPEECH_CLIENT_ID", "speech_api_key"),
    )
    speech_client_secret: str = Field(
        default="",
        validation_alias=AliasChoices("SPEECH_CLIENT_SECRET", "speech_secret_key"),
    )
    token_url: str = "https://openapi.baidu.com/oauth/2.0/token"
    credential_cache_path: str = "/tmp/translatechat/token"
    credential_refresh_interval_s: float = 20 * 24 * 60 * 60  # 20 days
    credential_retry_initial_s: float = 5.0
    credential_retry_max_s: float = 300.0
    credential_max_attempts: int = 5
    credential_refresh_fatal: bool = False
    credential_ready_timeout_s: float = 60.0

    # Text translation
    translate_url: str = "https://fanyi-api.baidu.com/api/trans/vip/translate"
    translate_app_id: str = ""
    translate_secret: str = ""

    # Speech services
    stt_url: str = "http://vop.baidu.com/server_api"
    tts_url: str = "http://tsn.baidu.com/text2audio"
    speech_cuid: str = "TranslateChat"
    speech_default_lang: str = "zh"

    # Timeouts
    http_timeout_s: float = 30.0
    ffmpeg_timeout_s: float = 60.0

    # Audio
    ffmpeg_binary: str = "ffmpeg"
    audio_codec: str = "amr_wb"
    audio_sample_rate: int = 16000
    audio_channels: int = 1
    audio_bitrate: int = 23850

    # Staging / download
    upload_root_dir: str = "./upload"
    download_prefix: str = "download"
    staging_keep_on_failure: bool = False


settings = Settings()
