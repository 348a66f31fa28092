# service/cabinet_service.py
# Background notifier: expired / expiring / low-stock reminders for the cabinet.
import sys
import time
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

# the p4a service runs with service/ as cwd; the app modules live one level up
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from applog import logger, set_log_file  # noqa: E402
from classifier import CabinetSummary, is_low_stock, summarize  # noqa: E402
from inventory import EncryptedInventoryStore, MedicineRecord, StoreError  # noqa: E402
from settings import CabinetSettings  # noqa: E402
from vault import VaultPaths, autoclass, load_key, on_android  # noqa: E402

EXPIRY_NOTIFICATION_ID = 99001
LOW_STOCK_NOTIFICATION_ID = 99002

Alert = Tuple[str, int, str, str]  # (kind, notification id, title, text)


def _plural(n: int, one: str, many: str) -> str:
    return one if n == 1 else many


def expiry_alert(summary: CabinetSummary, soon_window_days: int) -> Optional[Alert]:
    expired, soon = summary.expired, summary.expiring_soon
    if expired == 0 and soon == 0:
        return None
    if expired > 0 and soon > 0:
        title = "Medicine Alert"
        text = f"{expired} expired, {soon} expiring soon. Tap to review."
    elif expired > 0:
        title = "Expired Medicine"
        text = f"{expired} medicine{_plural(expired, ' has', 's have')} expired. Time to replace!"
    else:
        title = "Expiring Soon"
        text = f"{soon} medicine{_plural(soon, '', 's')} expiring within {soon_window_days} days."
    return ("expiry", EXPIRY_NOTIFICATION_ID, title, text)


def low_stock_alert(names: Sequence[str]) -> Optional[Alert]:
    if not names:
        return None
    preview = ", ".join(names[:2])
    more = f" +{len(names) - 2} more" if len(names) > 2 else ""
    return ("low_stock", LOW_STOCK_NOTIFICATION_ID, "Running Low on Meds",
            f"{preview}{more} - time to restock!")


def collect_alerts(medicines: Sequence[MedicineRecord], today: date,
                   settings: CabinetSettings) -> List[Alert]:
    summary = summarize(medicines, today, settings.soon_window_days, settings.low_stock_threshold)
    low = [m.name for m in medicines if is_low_stock(m.tablet_count, settings.low_stock_threshold)]
    return [a for a in (expiry_alert(summary, settings.soon_window_days), low_stock_alert(low)) if a]


def notify(nid: int, title: str, text: str):
    if not on_android():
        logger.info(f"[notification] {title}: {text}")
        return
    try:
        PythonService = autoclass("org.kivy.android.PythonService")
        service = PythonService.mService
        Context = autoclass("android.content.Context")
        NotificationManager = autoclass("android.app.NotificationManager")
        NotificationChannel = autoclass("android.app.NotificationChannel")
        Notification = autoclass("android.app.Notification")
        Build = autoclass("android.os.Build")

        channel_id = "medcabinet_alerts"
        nm = service.getSystemService(Context.NOTIFICATION_SERVICE)

        if Build.VERSION.SDK_INT >= 26:
            ch = NotificationChannel(channel_id, "Cabinet Alerts", NotificationManager.IMPORTANCE_HIGH)
            ch.setDescription("Expiry and low-stock alerts for your medicine cabinet")
            nm.createNotificationChannel(ch)
            builder = Notification.Builder(service, channel_id)
        else:
            builder = Notification.Builder(service)

        builder.setContentTitle(title)
        builder.setContentText(text)
        builder.setSmallIcon(service.getApplicationInfo().icon)
        builder.setAutoCancel(True)
        nm.notify(nid, builder.build())
    except Exception:
        logger.exception("posting notification failed")


class AlertTracker:
    """Remembers which alert kinds already fired today."""

    def __init__(self):
        self._fired = set()

    def due(self, alerts: Sequence[Alert], today: date) -> List[Alert]:
        self._fired = {k for k in self._fired if k[1] == today}
        out = []
        for alert in alerts:
            k = (alert[0], today)
            if k not in self._fired:
                self._fired.add(k)
                out.append(alert)
        return out


def check_once(store: EncryptedInventoryStore, settings: CabinetSettings,
               tracker: AlertTracker, now: Optional[datetime] = None) -> List[Alert]:
    today = (now or datetime.now()).date()
    medicines = store.fetch_medicines(settings.user_id)
    fired = tracker.due(collect_alerts(medicines, today, settings), today)
    for _, nid, title, text in fired:
        notify(nid, title, text)
    return fired


def poll_once(paths: VaultPaths, settings: CabinetSettings, tracker: AlertTracker,
              store: Optional[EncryptedInventoryStore] = None) -> Optional[EncryptedInventoryStore]:
    """One notifier pass. Returns the store to reuse on the next pass."""
    try:
        if store is None:
            key = load_key(paths.key_path)
            if key is None:
                # the app creates the key on first launch
                raise StoreError("vault key missing - open app once to initialize")
            store = EncryptedInventoryStore(key, paths.db_path, paths.tmp_dir)
        check_once(store, settings, tracker)
    except StoreError as e:
        logger.warning(f"cabinet check skipped: {e}")
    except Exception:
        # a bad row must not stop the service; retry next pass
        logger.exception("cabinet check failed")
    return store


def main_loop():
    settings = CabinetSettings.from_env()
    paths = VaultPaths.default()
    set_log_file(paths.log_path)
    tracker = AlertTracker()
    store = None

    while True:
        store = poll_once(paths, settings, tracker, store)
        time.sleep(settings.poll_seconds)


if __name__ == "__main__":
    main_loop()
