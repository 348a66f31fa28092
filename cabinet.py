# cabinet.py
# State container for the cabinet screen: fetch -> render -> user action -> mutate -> re-fetch.

from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import classifier
from applog import logger
from classifier import ExpiryBucket, StockLevel
from inventory import AlertStore, InventoryStore, MedicineRecord, StoreError
from settings import DOSE_QUANTITIES, CabinetSettings


class CabinetFilter(str, Enum):
    ALL = "all"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


class Phase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class Notice:
    message: str
    is_error: bool = False


@dataclass(frozen=True)
class CabinetState:
    phase: Phase = Phase.IDLE
    medicines: Tuple[MedicineRecord, ...] = ()
    filter: CabinetFilter = CabinetFilter.ALL
    today: Optional[date] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class MedicineCard:
    medicine: MedicineRecord
    bucket: Optional[ExpiryBucket]
    badge: str
    status: str
    expires: str
    stock: StockLevel
    can_take_dose: bool
    needs_alert: bool


@dataclass(frozen=True)
class DosePrompt:
    medicine: MedicineRecord
    available_slots: Tuple[str, ...]
    logged_slots: Tuple[str, ...]
    suggested_slot: Optional[str]
    quantities: Tuple[int, ...]
    blocked_reason: Optional[str]
    needs_dietary_confirmation: bool
    logs_unavailable: bool

    @property
    def can_confirm(self) -> bool:
        return self.blocked_reason is None


Listener = Callable[[CabinetState], None]


class CabinetController:
    """Owns the cabinet screen's state; the UI only renders it and forwards taps.

    Every mutation goes to the store first and is followed by a full re-fetch.
    Nothing is applied locally ahead of the store, so a failed call leaves the
    state exactly as it was.
    """

    def __init__(self, store: InventoryStore, user_id: str,
                 settings: Optional[CabinetSettings] = None,
                 alerts: Optional[AlertStore] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.alerts = alerts if alerts is not None else store
        self.user_id = user_id
        self.settings = settings or CabinetSettings()
        self.clock = clock
        self._state = CabinetState()
        self._listeners: List[Listener] = []
        self.notices: List[Notice] = []

    # -------------------------
    # State plumbing
    # -------------------------
    @property
    def state(self) -> CabinetState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _set(self, **changes):
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("cabinet listener failed")

    def _notify(self, message: str, is_error: bool = False):
        self.notices.append(Notice(message, is_error))

    def drain_notices(self) -> List[Notice]:
        out, self.notices = self.notices, []
        return out

    def today(self) -> date:
        return self.clock().date()

    def _find(self, medicine_id: str) -> Optional[MedicineRecord]:
        return next((m for m in self._state.medicines if m.id == medicine_id), None)

    # -------------------------
    # Fetch / render
    # -------------------------
    def load(self) -> bool:
        self._set(phase=Phase.LOADING, today=self.today())
        try:
            medicines = self.store.fetch_medicines(self.user_id)
        except StoreError as e:
            logger.exception("load medicines failed")
            self._set(phase=Phase.FAILED, error=str(e))
            self._notify(f"Error loading medicines: {e}", is_error=True)
            return False
        self._set(phase=Phase.READY, medicines=tuple(medicines), error=None)
        return True

    def set_filter(self, cabinet_filter: CabinetFilter):
        self._set(filter=CabinetFilter(cabinet_filter))

    def _bucket(self, m: MedicineRecord) -> Optional[ExpiryBucket]:
        return classifier.classify_medicine(m, self.today(), self.settings.soon_window_days)

    def visible(self) -> List[MedicineRecord]:
        f = self._state.filter
        if f is CabinetFilter.ALL:
            return list(self._state.medicines)
        wanted = ExpiryBucket.EXPIRED if f is CabinetFilter.EXPIRED else ExpiryBucket.EXPIRING_SOON
        return [m for m in self._state.medicines if self._bucket(m) is wanted]

    def counts(self) -> Dict[CabinetFilter, int]:
        buckets = [self._bucket(m) for m in self._state.medicines]
        return {
            CabinetFilter.ALL: len(buckets),
            CabinetFilter.EXPIRING_SOON: buckets.count(ExpiryBucket.EXPIRING_SOON),
            CabinetFilter.EXPIRED: buckets.count(ExpiryBucket.EXPIRED),
        }

    def summary(self) -> classifier.CabinetSummary:
        return classifier.summarize(self._state.medicines, self.today(),
                                    self.settings.soon_window_days, self.settings.low_stock_threshold)

    def empty_message(self) -> str:
        f = self._state.filter
        if f is CabinetFilter.EXPIRED:
            return "No expired medicines"
        if f is CabinetFilter.EXPIRING_SOON:
            return "No medicines expiring soon"
        return "Your cabinet is empty"

    def card(self, medicine: MedicineRecord) -> MedicineCard:
        today, window = self.today(), self.settings.soon_window_days
        bucket = self._bucket(medicine)
        return MedicineCard(
            medicine=medicine,
            bucket=bucket,
            badge=classifier.expiry_badge_text(medicine, today, window),
            status=classifier.expiry_status_text(medicine, today, window),
            expires=classifier.format_expiry(medicine.expiry_date),
            stock=classifier.stock_level(medicine.tablet_count, self.settings.low_stock_threshold),
            can_take_dose=bucket is not ExpiryBucket.EXPIRED,
            needs_alert=classifier.should_show_blocking_alert(medicine, today),
        )

    def pending_alerts(self) -> List[MedicineRecord]:
        today = self.today()
        return [m for m in self._state.medicines if classifier.should_show_blocking_alert(m, today)]

    # -------------------------
    # Take dose
    # -------------------------
    def _todays_logs(self):
        try:
            return self.store.fetch_today_dose_logs(self.user_id, self.today())
        except StoreError:
            # duplicate prevention is best effort; never block the dose on it
            logger.warning("today's dose logs unavailable; not excluding any slot", exc_info=True)
            return None

    def prepare_dose(self, medicine_id: str) -> Optional[DosePrompt]:
        medicine = self._find(medicine_id)
        if medicine is None:
            self._notify("Medicine is no longer in your cabinet", is_error=True)
            return None
        logs = self._todays_logs()
        logged = tuple(classifier.logged_slots_today(medicine.id, logs))
        available = tuple(classifier.available_dose_slots(medicine, logs))
        suggested = classifier.next_available_slot(medicine.schedule_times, logged, self.clock())

        blocked = None
        if classifier.should_block_dose(medicine, self.today()):
            blocked = "Expired"
        elif classifier.is_out_of_stock(medicine.tablet_count):
            blocked = "Out of Stock"
        elif medicine.schedule_times and not available:
            blocked = "All Doses Taken"

        return DosePrompt(
            medicine=medicine,
            available_slots=available,
            logged_slots=logged,
            suggested_slot=suggested,
            quantities=tuple(q for q in DOSE_QUANTITIES if q <= medicine.tablet_count),
            blocked_reason=blocked,
            needs_dietary_confirmation=bool(medicine.food_warnings),
            logs_unavailable=logs is None,
        )

    def take_dose(self, medicine_id: str, quantity: int,
                  scheduled_time: Optional[str] = None,
                  dietary_confirmed: bool = False) -> bool:
        prompt = self.prepare_dose(medicine_id)
        if prompt is None:
            return False
        medicine = prompt.medicine

        if prompt.blocked_reason == "Expired":
            return self._reject(f"{medicine.name} has expired. Please remove it and get a new strip.")
        if prompt.blocked_reason is not None:
            return self._reject(f"Cannot log dose: {prompt.blocked_reason}")
        if not 1 <= quantity <= medicine.tablet_count:
            return self._reject(f"Cannot take {quantity}; {medicine.tablet_count} tablets left")
        if medicine.schedule_times:
            scheduled_time = scheduled_time or prompt.suggested_slot
            if scheduled_time not in medicine.schedule_times:
                return self._reject(f"{scheduled_time} is not a scheduled dose time for {medicine.name}")
            if scheduled_time not in prompt.available_slots:
                return self._reject(f"The {scheduled_time} dose is already logged today")
        if prompt.needs_dietary_confirmation and not dietary_confirmed:
            return self._reject("Please confirm the dietary warnings first")

        try:
            remaining = self.store.record_dose(self.user_id, medicine.id, quantity, scheduled_time,
                                               taken_at=self.clock().replace(microsecond=0))
        except StoreError as e:
            logger.exception("log dose failed")
            self._notify(f"Failed to log dose: {e}", is_error=True)
            return False

        # notices follow the store's count, not the cached record
        stocked = replace(medicine, tablet_count=remaining + quantity)
        outcome = classifier.apply_dose(stocked, quantity, self.settings.low_stock_threshold)
        self._notify(f"Took {quantity} {medicine.name}. {outcome.remaining} remaining.")
        if outcome.low_stock:
            self._notify(f"Low stock! Only {outcome.remaining} tablets left.")
        elif outcome.out_of_stock:
            self._notify(f"{medicine.name} is now out of stock.")
        self.load()
        return True

    def _reject(self, message: str) -> bool:
        logger.warning(f"dose rejected: {message}")
        self._notify(message, is_error=True)
        return False

    # -------------------------
    # Restock / remove / acknowledge
    # -------------------------
    def restock(self, medicine_id: str, new_expiry: date, add_quantity: int) -> bool:
        if add_quantity < 1:
            self._notify("Strip quantity must be at least 1", is_error=True)
            return False
        try:
            self.store.restock(self.user_id, medicine_id, new_expiry, add_quantity)
        except StoreError as e:
            logger.exception("update strip failed")
            self._notify(f"Failed to update: {e}", is_error=True)
            return False
        self._notify("Strip updated successfully!")
        self.load()
        return True

    def remove(self, medicine_id: str) -> bool:
        medicine = self._find(medicine_id)
        name = medicine.name if medicine else "Medicine"
        try:
            self.store.remove_medicine(self.user_id, medicine_id)
        except StoreError as e:
            logger.exception("remove medicine failed")
            self._notify(f"Failed to remove: {e}", is_error=True)
            return False
        self._notify(f"{name} removed from cabinet")
        self.load()
        return True

    def acknowledge_alert(self, medicine_id: str) -> bool:
        try:
            self.alerts.mark_alert_shown(self.user_id, medicine_id)
        except StoreError as e:
            logger.exception("mark alert shown failed")
            self._notify(f"Failed to update alert status: {e}", is_error=True)
            return False
        self.load()
        return True
