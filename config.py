import os
from pydantic import Field
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# 환경 변수로 환경 구분 (local 또는 prod)
env = os.getenv("ENV", "local")

# 환경에 따라 다른 .env 파일 로드
if env == "prod":
    env_file_path = ".env.prod"
else:
    env_file_path = ".env"

load_dotenv(dotenv_path=env_file_path)


class Settings(BaseSettings):
    # Routing providers
    kakao_mobility_key: str = os.getenv("KAKAO_MOBILITY_KEY", "")
    kakao_mobility_base_url: str = os.getenv(
        "KAKAO_MOBILITY_BASE_URL", "https://apis-navi.kakaomobility.com/v1"
    )
    odsay_api_key: str = os.getenv("ODSAY_API_KEY", "")
    odsay_base_url: str = os.getenv("ODSAY_BASE_URL", "https://api.odsay.com/v1/api")

    # Database
    db_host: str = os.getenv("DB_HOST", "")
    db_port: int = int(os.getenv("DB_PORT", "3306"))
    db_name: str = os.getenv("DB_NAME", "")
    db_user: str = os.getenv("DB_USER", "")
    db_password: str = os.getenv("DB_PASSWORD", "")

    # Travel cost matrix
    matrix_batch_size: int = Field(
        default=3,
        ge=1,
        description="Number of concurrent routing calls per matrix batch"
    )
    matrix_batch_delay: float = Field(
        default=0.5,
        description="Delay in seconds between matrix batches (upstream rate limit)"
    )
    same_location_threshold_meters: float = Field(
        default=10.0,
        description="Pairs closer than this skip the routing provider"
    )
    public_transit_duration_factor: float = Field(
        default=1.3,
        description="Car duration multiplier used to estimate transit duration in the matrix"
    )

    # Routing API calls (timeout + retry)
    routing_request_timeout: float = Field(
        default=15.0,
        description="Per-call timeout in seconds for routing provider requests"
    )
    routing_max_retries: int = Field(
        default=3,
        description="Maximum number of attempts for routing provider calls"
    )
    routing_base_delay: float = Field(
        default=1.0,
        description="Base delay in seconds for exponential backoff"
    )
    routing_max_delay: float = Field(
        default=10.0,
        description="Maximum delay in seconds between retries"
    )
    recalc_concurrency: int = Field(
        default=3,
        ge=1,
        description="Maximum concurrent segment lookups during recalculation"
    )

    # Route search (nearest neighbor + 2-opt)
    time_weight: float = Field(default=1.0, description="Weight of duration (minutes) in route cost")
    distance_weight: float = Field(default=0.1, description="Weight of distance (meters) in route cost")
    max_iterations: int = Field(default=100, description="Maximum 2-opt sweeps")
    no_improvement_limit: int = Field(
        default=20,
        description="Stop 2-opt after this many consecutive sweeps without improvement"
    )
    min_improvement_threshold: float = Field(
        default=0.001,
        description="Minimum relative gain (fraction of current cost) for a 2-opt move"
    )
    two_opt_restarts: int = Field(
        default=0,
        description="Double-bridge restarts after the first 2-opt pass (0 disables)"
    )

    # Daily windows
    default_middle_day_start: str = Field(default="10:00", description="Start time for middle days")
    default_middle_day_end: str = Field(default="20:00", description="End time for middle days")
    distributor_default_start: str = Field(default="10:00", description="Distributor fallback start time")
    distributor_default_end: str = Field(default="22:00", description="Distributor fallback end time")
    default_stay_duration: int = Field(default=60, description="Stay minutes when a place has none")

    # Accommodation check-in
    default_check_in_time: str = Field(default="15:00", description="Check-in time when none is set")
    check_in_duration: int = Field(default=30, description="Minutes reserved for the check-in event")

    # Transit enrichment
    walking_threshold_meters: int = Field(
        default=500,
        description="Segments at or below this distance are walked instead of transit"
    )

    # Public transit planning
    transit_reoptimize_rounds: int = Field(
        default=3,
        description="Rounds of removing places from overloaded transit days"
    )
    transit_max_removal_ratio: float = Field(
        default=0.5,
        description="Upper bound on the share of places removed for overloaded days"
    )
    transit_long_segment_minutes: int = Field(default=20, description="Segments longer than this are flagged")
    transit_max_transfers: int = Field(default=2, description="Segments with more transfers are flagged")
    transit_long_wait_minutes: int = Field(default=8, description="Segments with a longer wait are flagged")

    class Config:
        env_file = ".env"


settings = Settings()
