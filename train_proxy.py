#!/usr/bin/env python3
# Train list proxy: token exchange, departure filter and ranking.

import datetime
from dataclasses import dataclass, field
import logging
import os
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, TypedDict

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response
import requests

load_dotenv()

log = logging.getLogger("train_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_optional_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    try:
        return float(value)
    except ValueError:
        return None


AUTH_TOKEN_URL = os.getenv("AUTH_TOKEN_URL")
TRAIN_URL = os.getenv("TRAIN_URL")
TRAINS_ROUTE = os.getenv("LOCAL_SERVER_BASE_URL") or "/trains"

# No timeout unless explicitly configured.
UPSTREAM_TIMEOUT_SEC = env_optional_float("UPSTREAM_TIMEOUT_SEC")

DEPARTURE_WINDOW_SEC = 30 * 60

CORS_ALLOW_HEADERS = (
    "Content-Type, Content-Length, Accept-Encoding, X-CSRF-Token, Authorization, "
    "accept, origin, Cache-Control, X-Requested-With"
)
CORS_ALLOW_METHODS = "GET,POST,HEAD,PATCH,OPTIONS,PUT"

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = env_int("APP_PORT", 8080)

JsonDict = Dict[str, Any]


class AuthResponse(TypedDict):
    access_token: str
    expires_in: int


class UpstreamError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(UpstreamError):
    def __init__(self, message: str = "Failed to fetch authentication token"):
        super().__init__(message)


class FetchError(UpstreamError):
    def __init__(self, message: str = "Failed to fetch train data"):
        super().__init__(message)


class DecodeError(UpstreamError):
    def __init__(self, message: str = "Failed to parse train data"):
        super().__init__(message)


class MissingConfig(Exception):
    def __init__(self, message: str):
        super().__init__(message)


def _int_field(obj: Mapping[str, Any], key: str) -> int:
    value = obj.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError()
    return value


def _str_field(obj: Mapping[str, Any], key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise DecodeError()
    return value


def _obj_field(obj: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = obj.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DecodeError()
    return value


@dataclass
class TimeOfDay:
    hours: int = 0
    minutes: int = 0
    seconds: int = 0

    def offset_seconds(self) -> int:
        # Seconds after midnight; out-of-range fields just push the offset past a day.
        return self.hours * 3600 + self.minutes * 60 + self.seconds

    @classmethod
    def from_json(cls, obj: Mapping[str, Any]) -> "TimeOfDay":
        return cls(
            hours=_int_field(obj, "Hours"),
            minutes=_int_field(obj, "Minutes"),
            seconds=_int_field(obj, "Seconds"),
        )

    def to_json(self) -> JsonDict:
        return {"Hours": self.hours, "Minutes": self.minutes, "Seconds": self.seconds}


@dataclass
class FareClasses:
    sleeper: int = 0
    ac: int = 0

    @classmethod
    def from_json(cls, obj: Mapping[str, Any]) -> "FareClasses":
        return cls(sleeper=_int_field(obj, "sleeper"), ac=_int_field(obj, "AC"))

    def to_json(self) -> JsonDict:
        return {"sleeper": self.sleeper, "AC": self.ac}


@dataclass
class Train:
    name: str = ""
    number: str = ""
    departure: TimeOfDay = field(default_factory=TimeOfDay)
    seats: FareClasses = field(default_factory=FareClasses)
    price: FareClasses = field(default_factory=FareClasses)
    delayed_by: int = 0

    def departure_offset(self) -> int:
        return self.departure.offset_seconds()

    def effective_departure_offset(self) -> int:
        return self.departure_offset() + self.delayed_by * 60

    @classmethod
    def from_json(cls, obj: Any) -> "Train":
        if obj is None:
            obj = {}
        if not isinstance(obj, dict):
            raise DecodeError()
        return cls(
            name=_str_field(obj, "trainName"),
            number=_str_field(obj, "trainNumber"),
            departure=TimeOfDay.from_json(_obj_field(obj, "departureTime")),
            seats=FareClasses.from_json(_obj_field(obj, "seatsAvailable")),
            price=FareClasses.from_json(_obj_field(obj, "price")),
            delayed_by=_int_field(obj, "delayedBy"),
        )

    def to_json(self) -> JsonDict:
        return {
            "trainName": self.name,
            "trainNumber": self.number,
            "departureTime": self.departure.to_json(),
            "seatsAvailable": self.seats.to_json(),
            "price": self.price.to_json(),
            "delayedBy": self.delayed_by,
        }


def decode_trains(data: Any) -> List[Train]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise DecodeError()
    return [Train.from_json(item) for item in data]


@dataclass(frozen=True)
class ClientCredentials:
    company_name: str = ""
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    owner_name: str = ""
    owner_email: str = ""
    roll_no: str = ""

    @classmethod
    def from_env(cls) -> "ClientCredentials":
        return cls(
            company_name=os.getenv("companyName", ""),
            client_id=os.getenv("clientID", ""),
            client_secret=os.getenv("clientSecret", ""),
            owner_name=os.getenv("ownerName", ""),
            owner_email=os.getenv("ownerEmail", ""),
            roll_no=os.getenv("rollNo", ""),
        )

    def to_payload(self) -> Dict[str, str]:
        return {
            "companyName": self.company_name,
            "clientID": self.client_id,
            "clientSecret": self.client_secret,
            "ownerName": self.owner_name,
            "ownerEmail": self.owner_email,
            "rollNo": self.roll_no,
        }


class TokenCache:
    # No lock around check-then-refresh: concurrent refreshes race and the last write wins.

    def __init__(
        self,
        session: requests.Session,
        auth_url: Optional[str],
        credentials: ClientCredentials,
        *,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._auth_url = auth_url
        self._credentials = credentials
        self._timeout = timeout
        self._clock = clock
        self._token = ""
        self._expires_at = 0.0

    @property
    def token(self) -> str:
        return self._token

    @property
    def expires_at(self) -> float:
        return self._expires_at

    def is_valid(self) -> bool:
        return bool(self._token) and self._expires_at > self._clock()

    def refresh(self) -> None:
        if not self._auth_url:
            raise MissingConfig("AUTH_TOKEN_URL not set")
        try:
            resp = self._session.post(
                self._auth_url,
                json=self._credentials.to_payload(),
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            log.warning("Token request failed: %s", exc)
            raise AuthError() from exc

        if resp.status_code >= 400:
            log.warning("Token request rejected: HTTP %s", resp.status_code)
            raise AuthError()

        try:
            body = resp.json()
        except ValueError as exc:
            log.warning("Token response is not JSON")
            raise AuthError() from exc

        auth = parse_auth_response(body)
        # Expiry is an absolute Unix timestamp and is stored as-is, even if already past.
        self._token = auth["access_token"]
        self._expires_at = float(auth["expires_in"])
        log.info(
            "Refreshed auth token, expires %s",
            datetime.datetime.fromtimestamp(self._expires_at, datetime.timezone.utc).isoformat(),
        )

    def ensure_token(self) -> str:
        if not self.is_valid():
            self.refresh()
        return self._token


def parse_auth_response(body: Any) -> AuthResponse:
    if not isinstance(body, dict):
        raise AuthError()
    token = body.get("access_token")
    expires_in = body.get("expires_in")
    if not isinstance(token, str):
        raise AuthError()
    if isinstance(expires_in, bool) or not isinstance(expires_in, int):
        raise AuthError()
    return {"access_token": token, "expires_in": expires_in}


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def seconds_since_midnight(now: datetime.datetime) -> float:
    now = now.astimezone(datetime.timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return (now - midnight).total_seconds()


# Delay is ignored here.
def filter_departing_soon(trains: List[Train], now: datetime.datetime) -> List[Train]:
    now_offset = seconds_since_midnight(now)
    return [t for t in trains if t.departure_offset() - now_offset > DEPARTURE_WINDOW_SEC]


# Cheapest sleeper, most sleeper seats, latest delay-adjusted departure; sorted() is stable.
def sort_trains(trains: List[Train]) -> List[Train]:
    return sorted(
        trains,
        key=lambda t: (t.price.sleeper, -t.seats.sleeper, -t.effective_departure_offset()),
    )


def fetch_train_list(
    session: requests.Session,
    url: str,
    token: str,
    *,
    timeout: Optional[float] = None,
) -> List[Train]:
    try:
        resp = session.get(
            url,
            timeout=timeout,
            headers={"Accept": "application/json", "Authorization": f"Bearer {token}"},
        )
    except requests.RequestException as exc:
        log.warning("Train list request failed: %s", exc)
        raise FetchError() from exc

    if resp.status_code >= 400:
        log.warning("Train list rejected: HTTP %s", resp.status_code)
        raise FetchError()

    try:
        data = resp.json()
    except ValueError as exc:
        log.warning("Train list is not JSON")
        raise DecodeError() from exc

    try:
        return decode_trains(data)
    except DecodeError:
        log.warning("Train list has unexpected shape")
        raise


def get_trains(
    session: requests.Session,
    token_cache: TokenCache,
    train_url: Optional[str],
    *,
    now: Optional[datetime.datetime] = None,
    timeout: Optional[float] = None,
) -> List[Train]:
    if not train_url:
        raise MissingConfig("TRAIN_URL not set")
    token = token_cache.ensure_token()
    trains = fetch_train_list(session, train_url, token, timeout=timeout)

    if now is None:
        now = utc_now()
    upcoming = filter_departing_soon(trains, now)
    log.debug("Kept %d of %d trains", len(upcoming), len(trains))
    return sort_trains(upcoming)


app = Flask(__name__)
session = requests.Session()
token_cache = TokenCache(
    session,
    AUTH_TOKEN_URL,
    ClientCredentials.from_env(),
    timeout=UPSTREAM_TIMEOUT_SEC,
)


def error_response(status: int, message: str) -> Response:
    resp = jsonify({"error": message})
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.before_request
def short_circuit_preflight() -> Optional[Response]:
    if request.method == "OPTIONS":
        return make_response("", 204)
    return None


@app.after_request
def add_common_headers(resp: Response) -> Response:
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Credentials"] = "true"
    resp.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
    resp.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    return resp


@app.route(TRAINS_ROUTE, methods=["GET"])
def all_trains() -> Response:
    try:
        trains = get_trains(session, token_cache, TRAIN_URL, timeout=UPSTREAM_TIMEOUT_SEC)
    except MissingConfig as exc:
        log.warning("Configuration missing: %s", exc)
        return error_response(500, "Train API not configured")
    except UpstreamError as exc:
        return error_response(500, exc.message)
    except Exception:
        log.exception("Unexpected error while serving trains")
        return error_response(500, "Unexpected error")

    return jsonify([t.to_json() for t in trains])


if __name__ == "__main__":
    app.run(host=APP_HOST, port=APP_PORT, threaded=True)
