"""
Client-side behavioral event detector.

Turns raw page signals (clicks, scrolls, visibility changes, pointer
leaves, unload) into the semantic event vocabulary and hands every event
to a delivery sink. All detection state lives on one SessionState owned by
the detector instance.
"""

import asyncio
import json
import logging
import random
import re
import string
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from .config import DetectorConfig
from .models import BehavioralEvent, DeviceInfo, EventType
from .utils import round_half_up

log = logging.getLogger(__name__)

SESSION_STORAGE_KEY = "sdkUserId"

_MOBILE_UA = re.compile(r"Mobi|Android", re.IGNORECASE)
_TABLET_UA = re.compile(r"iPad|Tablet", re.IGNORECASE)


class EventSink(Protocol):
    def submit(self, event: BehavioralEvent) -> Any:
        ...


class SessionStorage(Protocol):
    """Client-side key/value storage that survives page loads."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class MemoryStorage:
    def __init__(self):
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class FileStorage:
    """JSON file storage, the local stand-in for browser localStorage."""

    def __init__(self, path: str):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        with open(self.path, "r") as f:
            return json.load(f)

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(data, f)


def generate_session_id() -> str:
    """Random id of the form `session-xxxxxxxxx`."""
    alphabet = string.ascii_lowercase + string.digits
    return "session-" + "".join(random.choices(alphabet, k=9))


def detect_device_info(user_agent: str, platform: str = "", language: str = "") -> DeviceInfo:
    """Classify the device from its user agent."""
    device = "Desktop"
    if _MOBILE_UA.search(user_agent):
        device = "Mobile"
    elif _TABLET_UA.search(user_agent):
        device = "Tablet"
    return DeviceInfo(
        device=device,
        user_agent=user_agent,
        platform=platform,
        language=language,
    )


@dataclass
class ClickTarget:
    """The element a click landed on."""
    tag: str
    id: str = ""
    classes: list[str] = field(default_factory=list)

    @classmethod
    def from_class_name(cls, tag: str, id: str = "", class_name: str = "") -> "ClickTarget":
        return cls(tag=tag, id=id, classes=class_name.split())

    def to_payload(self) -> dict:
        return {"tag": self.tag, "id": self.id, "classes": list(self.classes)}


@dataclass
class SessionState:
    """Mutable detection state of one visitor session."""
    session_id: str
    start_time: float
    last_interaction_time: float
    active: bool = True
    scroll_depth_max: int = 0
    click_timestamps: deque = field(default_factory=deque)
    identified_email: Optional[str] = None


class EventDetector:
    """
    Derives semantic behavioral events from raw page signals.

    Handlers are synchronous and never wait on delivery; the sink is
    expected to schedule network work on its own. The clock returns
    milliseconds.
    """

    def __init__(
        self,
        account_id: str,
        sink: EventSink,
        config: Optional[DetectorConfig] = None,
        storage: Optional[SessionStorage] = None,
        device_info: Optional[DeviceInfo] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.account_id = account_id
        self.sink = sink
        self.config = config if config is not None else DetectorConfig()
        self.storage = storage if storage is not None else MemoryStorage()
        self.device_info = device_info if device_info is not None else DeviceInfo()
        self._clock = clock if clock is not None else (lambda: time.time() * 1000)
        self._inactivity_task: Optional[asyncio.Task] = None

        session_id = self.storage.get(SESSION_STORAGE_KEY) or generate_session_id()
        self.storage.set(SESSION_STORAGE_KEY, session_id)

        now = self._clock()
        self.session = SessionState(
            session_id=session_id,
            start_time=now,
            last_interaction_time=now,
        )

    # Lifecycle
    def start(self):
        """Report the session start and begin inactivity polling if a loop runs."""
        self.track_session_duration()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("No running loop, inactivity polling disabled")
            return
        if self._inactivity_task is None:
            self._inactivity_task = loop.create_task(self._inactivity_loop())

    def teardown(self):
        """Page is going away: report the session length and stop timers."""
        self.track_session_duration()
        if self._inactivity_task is not None:
            self._inactivity_task.cancel()
            self._inactivity_task = None

    def identify(self, email: str):
        """Attach an email to every subsequent event. Not validated here."""
        self.session.identified_email = email

    # Raw signal handlers
    def handle_click(self, target: ClickTarget):
        details = target.to_payload()
        self._emit(EventType.INTERACTION, details)

        now = self._clock()
        clicks = self.session.click_timestamps
        clicks.append(now)
        while clicks and now - clicks[0] >= self.config.rage_click_window_ms:
            clicks.popleft()

        if len(clicks) >= self.config.rage_click_threshold:
            self._emit(EventType.RAGE_CLICK, details)
            clicks.clear()

        if self.config.add_to_cart_class in target.classes:
            # Fired on add-to-cart: purchase intent, not a confirmed abandonment
            self._emit(EventType.CART_ABANDONMENT, {"message": "User added item to cart"})
        elif self.config.checkout_step_class in target.classes:
            self._emit(EventType.CHECKOUT_PROGRESS, {"step": target.id})

        if self.config.help_center_class in target.classes:
            self._emit(EventType.HELP_CENTER_VISIT, {"message": "User visited help center"})

        self._touch(now)

    def handle_scroll(self, scroll_top: float, document_height: float, viewport_height: float):
        scrollable = document_height - viewport_height
        if scrollable <= 0:
            return

        percent = round_half_up(scroll_top / scrollable * 100)
        if percent > self.session.scroll_depth_max:
            self.session.scroll_depth_max = percent
            self._emit(EventType.SCROLL_DEPTH, {"depth": percent})

        self._touch(self._clock())

    def handle_visibility_change(self, hidden: bool):
        if hidden:
            self.session.active = False
            self._emit(EventType.USER_INACTIVE, {"message": "User is inactive"})
        else:
            self.session.active = True
            self._emit(EventType.USER_ACTIVE, {"message": "User is active"})

    def handle_pointer_leave(self, client_y: float):
        # Negative y means the cursor left through the top of the viewport
        if client_y < 0:
            self._emit(EventType.EXIT_INTENT, {"message": "User showed exit intent"})

    # Timers
    def check_inactivity(self) -> bool:
        """Flip to inactive once the dead time passes. Returns True on transition."""
        idle = self._clock() - self.session.last_interaction_time
        if self.session.active and idle > self.config.inactivity_threshold_ms:
            self.session.active = False
            self._emit(EventType.USER_INACTIVE, {"message": "User is inactive"})
            return True
        return False

    async def _inactivity_loop(self):
        while True:
            await asyncio.sleep(self.config.inactivity_poll_seconds)
            self.check_inactivity()

    def track_session_duration(self):
        duration = self._clock() - self.session.start_time
        self._emit(EventType.SESSION_DURATION, {"duration": int(duration)})

    # Internals
    def _touch(self, now: float):
        self.session.last_interaction_time = now
        self.session.active = True

    def _emit(self, event_type: EventType, payload: dict) -> Optional[BehavioralEvent]:
        event = BehavioralEvent(
            account_id=self.account_id,
            session_id=self.session.session_id,
            event_type=event_type,
            payload=payload,
            client_email=self.session.identified_email,
            device_info=self.device_info,
        )
        try:
            self.sink.submit(event)
        except Exception:
            log.exception("Failed to hand off %s", event_type.value)
            return None
        return event
