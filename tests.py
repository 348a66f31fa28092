import os
import tempfile
import unittest
from datetime import date, datetime, time, timedelta
from pathlib import Path
from unittest import mock

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import classifier as c
import vault
from applog import _RingLog
from cabinet import CabinetController, CabinetFilter, Phase
from classifier import ExpiryBucket, StockLevel
from inventory import (DoseLogEntry, EncryptedInventoryStore, MedicineNotFoundError, MedicineRecord,
                       OutOfStockError, StoreAuthError, TransientStoreError)
from service import cabinet_service as svc
from settings import CabinetSettings

TODAY = date(2026, 10, 16)
NOW = datetime(2026, 10, 16, 9, 0)
USER = "u1"


def _med(mid="a", **kw) -> MedicineRecord:
    kw.setdefault("name", mid.upper())
    return MedicineRecord(id=mid, **kw)


def _log(mid, slot, day=TODAY, qty=1) -> DoseLogEntry:
    return DoseLogEntry(id=f"{mid}-{slot}", medicine_id=mid, scheduled_time=slot,
                        taken_at=datetime.combine(day, time(8, 5)), quantity_taken=qty)


class _TempStore(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.paths = vault.VaultPaths.under(Path(self._td.name))
        self.key = AESGCM.generate_key(bit_length=256)
        self.store = EncryptedInventoryStore(self.key, self.paths.db_path, self.paths.tmp_dir)

    def tearDown(self):
        self._td.cleanup()


class TestCrypto(unittest.TestCase):
    def test_aesgcm_roundtrip(self):
        key = AESGCM.generate_key(bit_length=256)
        pt = os.urandom(1024 * 64)
        ct = vault.aes_encrypt(pt, key)
        self.assertEqual(pt, vault.aes_decrypt(ct, key))

    def test_wrong_key_rejected(self):
        ct = vault.aes_encrypt(b"cabinet", AESGCM.generate_key(bit_length=256))
        with self.assertRaises(InvalidTag):
            vault.aes_decrypt(ct, AESGCM.generate_key(bit_length=256))
        with self.assertRaises(InvalidTag):
            vault.aes_decrypt(b"short", AESGCM.generate_key(bit_length=256))

    def test_key_created_once(self):
        with tempfile.TemporaryDirectory() as td:
            key_path = Path(td) / ".enc_key"
            k1 = vault.get_or_create_key(key_path)
            k2 = vault.get_or_create_key(key_path)
            self.assertEqual(len(k1), 32)
            self.assertEqual(k1, k2)


class TestExpiry(unittest.TestCase):
    def test_before_today_is_expired(self):
        for d in (1, 2, 30, 400):
            self.assertIs(c.classify_expiry(TODAY - timedelta(days=d), TODAY, 3), ExpiryBucket.EXPIRED)

    def test_within_window_is_expiring_soon(self):
        for d in range(0, 4):
            self.assertIs(c.classify_expiry(TODAY + timedelta(days=d), TODAY, 3), ExpiryBucket.EXPIRING_SOON)

    def test_after_window_is_safe(self):
        for d in (4, 5, 365):
            self.assertIs(c.classify_expiry(TODAY + timedelta(days=d), TODAY, 3), ExpiryBucket.SAFE)

    def test_expiring_in_two_days_with_three_day_window(self):
        self.assertIs(c.classify_expiry(TODAY + timedelta(days=2), TODAY, 3), ExpiryBucket.EXPIRING_SOON)

    def test_time_of_day_ignored(self):
        late = datetime.combine(TODAY, time(23, 59))
        self.assertIs(c.classify_expiry(TODAY, late, 0), ExpiryBucket.EXPIRING_SOON)
        self.assertIs(c.classify_expiry(datetime.combine(TODAY - timedelta(days=1), time(23, 59)),
                                        datetime.combine(TODAY, time(0, 1)), 3), ExpiryBucket.EXPIRED)

    def test_no_expiry_date(self):
        m = _med()
        self.assertIsNone(c.classify_medicine(m, TODAY))
        self.assertEqual(c.expiry_status_text(m, TODAY), "No expiry set")
        self.assertEqual(c.format_expiry(None), "Not set")
        self.assertFalse(c.should_show_blocking_alert(m, TODAY))

    def test_texts(self):
        expired = _med(expiry_date=TODAY - timedelta(days=3))
        soon = _med(expiry_date=TODAY + timedelta(days=10))
        safe = _med(expiry_date=TODAY + timedelta(days=90))
        self.assertEqual(c.expiry_badge_text(expired, TODAY), "EXPIRED")
        self.assertEqual(c.expiry_badge_text(soon, TODAY), "10d left")
        self.assertEqual(c.expiry_badge_text(safe, TODAY), "Safe")
        self.assertEqual(c.expiry_status_text(soon, TODAY), "Expiring in 10 days")
        self.assertEqual(c.expiry_status_text(safe, TODAY), "Valid")
        self.assertEqual(c.expiry_alert_message(expired, TODAY), "Expired 3 days ago")
        self.assertEqual(c.expiry_alert_message(_med(expiry_date=TODAY - timedelta(days=1)), TODAY),
                         "Expired 1 days ago")
        self.assertEqual(c.expiry_alert_message(soon, TODAY), "Expires in 10 days")
        self.assertEqual(c.expiry_alert_message(_med(expiry_date=TODAY), TODAY), "Expires today")
        self.assertEqual(c.expiry_alert_message(_med(), TODAY), "No expiry date set")
        self.assertEqual(c.expiry_alert_message(safe, TODAY), "Valid for 90 more days")
        self.assertEqual(c.format_expiry(date(2027, 1, 1)), "Jan 2027")

    def test_blocking_alert_respects_acknowledgement(self):
        m = _med(expiry_date=TODAY - timedelta(days=1))
        self.assertTrue(c.should_show_blocking_alert(m, TODAY))
        self.assertTrue(c.should_block_dose(m, TODAY))
        acked = _med(expiry_date=TODAY - timedelta(days=1), expiry_alert_shown=True)
        self.assertFalse(c.should_show_blocking_alert(acked, TODAY))
        self.assertTrue(c.should_block_dose(acked, TODAY))

    def test_parse_expiry(self):
        self.assertEqual(c.parse_expiry("2027-01"), date(2027, 1, 1))
        self.assertEqual(c.parse_expiry(" 2027-03-15 "), date(2027, 3, 15))
        self.assertEqual(c.parse_expiry("06/2028"), date(2028, 6, 1))
        for bad in ("", "2027-13", "next year", "2027-02-30"):
            with self.assertRaises(ValueError):
                c.parse_expiry(bad)

    def test_default_strip_expiry(self):
        self.assertEqual(c.default_strip_expiry(TODAY), date(2027, 4, 1))
        self.assertEqual(c.default_strip_expiry(date(2026, 6, 30)), date(2026, 12, 1))


class TestStock(unittest.TestCase):
    def test_low_stock_boundaries(self):
        self.assertFalse(c.is_low_stock(0, 5))
        self.assertTrue(c.is_low_stock(1, 5))
        self.assertTrue(c.is_low_stock(5, 5))
        self.assertFalse(c.is_low_stock(6, 5))

    def test_stock_levels(self):
        self.assertIs(c.stock_level(0), StockLevel.OUT)
        self.assertIs(c.stock_level(3), StockLevel.LOW)
        self.assertIs(c.stock_level(12), StockLevel.IN_STOCK)

    def test_apply_dose_never_negative(self):
        for count in range(0, 12):
            for qty in range(0, count + 1):
                out = c.apply_dose(_med(tablet_count=count), qty)
                self.assertGreaterEqual(out.remaining, 0)
                self.assertEqual(out.remaining, count - qty)

    def test_apply_dose_signals(self):
        self.assertEqual(c.apply_dose(_med(tablet_count=8), 3), (5, True, False))
        self.assertEqual(c.apply_dose(_med(tablet_count=8), 2), (6, False, False))
        self.assertEqual(c.apply_dose(_med(tablet_count=2), 2), (0, False, True))

    def test_negative_count_rejected(self):
        with self.assertRaises(ValueError):
            _med(tablet_count=-1)


class TestDoseSlots(unittest.TestCase):
    def setUp(self):
        self.a = _med("a", schedule_times=("08:00", "14:00", "20:00"))

    def test_scenario_two_logged(self):
        logs = [_log("a", "08:00"), _log("a", "20:00")]
        self.assertEqual(c.available_dose_slots(self.a, logs), ["14:00"])

    def test_other_medicines_ignored(self):
        logs = [_log("b", "08:00"), _log("b", "14:00"), _log("a", None)]
        self.assertEqual(c.available_dose_slots(self.a, logs), ["08:00", "14:00", "20:00"])

    def test_failed_fetch_excludes_nothing(self):
        self.assertEqual(c.available_dose_slots(self.a, None), ["08:00", "14:00", "20:00"])
        self.assertEqual(c.logged_slots_today("a", None), [])

    def test_next_available_slot(self):
        sched = ("08:00", "14:00", "20:00")
        self.assertEqual(c.next_available_slot(sched, [], time(8, 20)), "08:00")
        self.assertEqual(c.next_available_slot(sched, [], time(8, 31)), "14:00")
        self.assertEqual(c.next_available_slot(sched, ["14:00", "20:00"], time(21, 0)), "08:00")
        self.assertIsNone(c.next_available_slot(sched, sched, NOW))
        self.assertIsNone(c.next_available_slot((), [], NOW))

    def test_format_slot(self):
        self.assertEqual(c.format_slot("08:00"), "8:00 AM")
        self.assertEqual(c.format_slot("00:15"), "12:15 AM")
        self.assertEqual(c.format_slot("12:30"), "12:30 PM")
        self.assertEqual(c.format_slot("20:05"), "8:05 PM")
        self.assertEqual(c.format_slot("bedtime"), "bedtime")


class TestSummary(unittest.TestCase):
    def test_summarize_and_attention(self):
        meds = [
            _med("a", expiry_date=TODAY - timedelta(days=1), tablet_count=3),
            _med("b", expiry_date=TODAY + timedelta(days=20), tablet_count=0),
            _med("c", expiry_date=TODAY + timedelta(days=5), tablet_count=30),
            _med("d", expiry_date=TODAY - timedelta(days=40), tablet_count=9),
            _med("e", tablet_count=5),
        ]
        s = c.summarize(meds, TODAY, 30, 5)
        self.assertEqual((s.total, s.expired, s.expiring_soon, s.low_stock, s.out_of_stock), (5, 2, 2, 2, 1))
        self.assertTrue(s.needs_attention)
        self.assertEqual(s.attention_count, 6)
        self.assertEqual([m.id for m in c.needing_attention(meds, TODAY, 30)], ["d", "a", "c", "b"])


class TestStore(_TempStore):
    def _add(self, **kw):
        kw.setdefault("name", "Paracetamol")
        return self.store.add_medicine(USER, MedicineRecord(id="", **kw))

    def test_add_fetch(self):
        mid = self._add(expiry_date=date(2027, 1, 1), tablet_count=10,
                        schedule_times=["08:00", "20:00"], food_warnings=["Avoid alcohol"])
        meds = self.store.fetch_medicines(USER)
        self.assertEqual(len(meds), 1)
        m = meds[0]
        self.assertEqual(m.id, mid)
        self.assertEqual(m.expiry_date, date(2027, 1, 1))
        self.assertEqual(m.schedule_times, ("08:00", "20:00"))
        self.assertEqual(m.food_warnings, ("Avoid alcohol",))
        self.assertEqual(self.store.fetch_medicines("someone-else"), [])
        self.assertTrue(self.paths.db_path.exists())
        self.assertNotIn(b"Paracetamol", self.paths.db_path.read_bytes())

    def test_record_dose_and_today_logs(self):
        mid = self._add(tablet_count=10, schedule_times=["08:00"])
        left = self.store.record_dose(USER, mid, 2, "08:00", taken_at=datetime(2026, 10, 16, 8, 10))
        self.store.record_dose(USER, mid, 1, None, taken_at=datetime(2026, 10, 15, 20, 0))
        self.assertEqual(left, 8)
        self.assertEqual(self.store.fetch_medicine(USER, mid).tablet_count, 7)
        logs = self.store.fetch_today_dose_logs(USER, TODAY)
        self.assertEqual(len(logs), 1)
        self.assertEqual((logs[0].medicine_id, logs[0].scheduled_time, logs[0].quantity_taken), (mid, "08:00", 2))
        self.assertEqual(logs[0].log_date, TODAY)
        self.assertEqual(logs[0].medicine_name, "Paracetamol")

    def test_record_dose_clamps_and_rejects_empty(self):
        mid = self._add(tablet_count=1)
        self.assertEqual(self.store.record_dose(USER, mid, 3), 0)
        with self.assertRaises(OutOfStockError):
            self.store.record_dose(USER, mid, 1)
        self.assertEqual(len(self.store.fetch_today_dose_logs(USER)), 1)

    def test_restock_resets_alert(self):
        mid = self._add(tablet_count=2, expiry_date=TODAY - timedelta(days=5))
        self.store.mark_alert_shown(USER, mid)
        self.store.mark_alert_shown(USER, mid)
        self.assertTrue(self.store.fetch_medicine(USER, mid).expiry_alert_shown)
        self.assertEqual(self.store.restock(USER, mid, date(2027, 6, 1), 10), 12)
        m = self.store.fetch_medicine(USER, mid)
        self.assertEqual((m.tablet_count, m.expiry_date, m.expiry_alert_shown), (12, date(2027, 6, 1), False))

    def test_remove_keeps_logs(self):
        mid = self._add(tablet_count=5)
        self.store.record_dose(USER, mid, 1, taken_at=datetime.combine(TODAY, time(9, 0)))
        self.store.remove_medicine(USER, mid)
        self.assertEqual(self.store.fetch_medicines(USER), [])
        self.assertEqual(len(self.store.fetch_today_dose_logs(USER, TODAY)), 1)
        with self.assertRaises(MedicineNotFoundError):
            self.store.remove_medicine(USER, mid)

    def test_other_user_cannot_touch(self):
        mid = self._add(tablet_count=5)
        with self.assertRaises(MedicineNotFoundError):
            self.store.record_dose("intruder", mid, 1)
        self.assertEqual(self.store.fetch_medicine(USER, mid).tablet_count, 5)

    def test_auth_errors(self):
        with self.assertRaises(StoreAuthError):
            self.store.fetch_medicines("")
        other = EncryptedInventoryStore(AESGCM.generate_key(bit_length=256),
                                        self.paths.db_path, self.paths.tmp_dir)
        with self.assertRaises(StoreAuthError):
            other.fetch_medicines(USER)

    def test_io_failure_is_transient_and_changes_nothing(self):
        mid = self._add(tablet_count=5)
        before = self.paths.db_path.read_bytes()
        with mock.patch("inventory.aes_encrypt", side_effect=OSError("disk full")):
            with self.assertRaises(TransientStoreError):
                self.store.record_dose(USER, mid, 1)
        self.assertEqual(self.paths.db_path.read_bytes(), before)
        self.assertEqual(self.store.fetch_medicine(USER, mid).tablet_count, 5)
        self.assertEqual(list(self.paths.tmp_dir.iterdir()), [])


class TestCabinetController(_TempStore):
    def setUp(self):
        super().setUp()
        self.ids = {}
        for key, rec in {
            "a": MedicineRecord(id="", name="Paracetamol", expiry_date=TODAY + timedelta(days=200),
                                tablet_count=10, schedule_times=("08:00", "14:00", "20:00")),
            "b": MedicineRecord(id="", name="Amoxicillin", expiry_date=TODAY + timedelta(days=2),
                                tablet_count=5),
            "c": MedicineRecord(id="", name="Ibuprofen", expiry_date=TODAY - timedelta(days=1),
                                tablet_count=3),
        }.items():
            self.ids[key] = self.store.add_medicine(USER, rec)
        self.ctl = CabinetController(self.store, USER, CabinetSettings(), clock=lambda: NOW)
        self.assertTrue(self.ctl.load())

    def _count(self, key):
        return self.store.fetch_medicine(USER, self.ids[key]).tablet_count

    def test_load_and_filters(self):
        self.assertIs(self.ctl.state.phase, Phase.READY)
        self.assertEqual(self.ctl.counts(), {CabinetFilter.ALL: 3, CabinetFilter.EXPIRING_SOON: 1,
                                             CabinetFilter.EXPIRED: 1})
        self.ctl.set_filter(CabinetFilter.EXPIRED)
        self.assertEqual([m.name for m in self.ctl.visible()], ["Ibuprofen"])
        self.ctl.set_filter("expiring_soon")
        self.assertEqual([m.name for m in self.ctl.visible()], ["Amoxicillin"])
        self.ctl.set_filter(CabinetFilter.ALL)
        self.assertEqual(len(self.ctl.visible()), 3)
        self.assertEqual([m.name for m in self.ctl.pending_alerts()], ["Ibuprofen"])

    def test_cards(self):
        by_name = {m.name: self.ctl.card(m) for m in self.ctl.state.medicines}
        self.assertFalse(by_name["Ibuprofen"].can_take_dose)
        self.assertTrue(by_name["Ibuprofen"].needs_alert)
        self.assertEqual(by_name["Amoxicillin"].badge, "2d left")
        self.assertIs(by_name["Amoxicillin"].stock, StockLevel.LOW)
        self.assertIs(by_name["Paracetamol"].bucket, ExpiryBucket.SAFE)

    def test_listeners_see_transitions(self):
        seen = []
        unsubscribe = self.ctl.subscribe(lambda s: seen.append(s.phase))
        self.ctl.load()
        unsubscribe()
        self.ctl.load()
        self.assertEqual(seen, [Phase.LOADING, Phase.READY])

    def test_take_dose_then_duplicate_slot_rejected(self):
        self.assertTrue(self.ctl.take_dose(self.ids["a"], 2, "08:00"))
        self.assertEqual(self._count("a"), 8)
        self.assertEqual(self.ctl.drain_notices()[0].message, "Took 2 Paracetamol. 8 remaining.")
        self.assertFalse(self.ctl.take_dose(self.ids["a"], 1, "08:00"))
        self.assertTrue(self.ctl.drain_notices()[0].is_error)
        self.assertEqual(self._count("a"), 8)

        prompt = self.ctl.prepare_dose(self.ids["a"])
        self.assertEqual(prompt.available_slots, ("14:00", "20:00"))
        self.assertEqual(prompt.logged_slots, ("08:00",))
        self.assertEqual(prompt.suggested_slot, "14:00")
        self.assertEqual(prompt.quantities, (1, 2, 3))
        self.assertTrue(prompt.can_confirm)

    def test_take_dose_defaults_to_suggested_slot(self):
        self.assertTrue(self.ctl.take_dose(self.ids["a"], 1))
        logs = self.store.fetch_today_dose_logs(USER, TODAY)
        self.assertEqual([l.scheduled_time for l in logs], ["14:00"])

    def test_all_slots_taken(self):
        for slot in ("08:00", "14:00", "20:00"):
            self.assertTrue(self.ctl.take_dose(self.ids["a"], 1, slot))
        prompt = self.ctl.prepare_dose(self.ids["a"])
        self.assertEqual(prompt.blocked_reason, "All Doses Taken")
        self.assertFalse(self.ctl.take_dose(self.ids["a"], 1))

    def test_low_stock_notice(self):
        self.assertTrue(self.ctl.take_dose(self.ids["b"], 1))
        messages = [n.message for n in self.ctl.drain_notices()]
        self.assertIn("Low stock! Only 4 tablets left.", messages)
        self.assertEqual(self.ctl.card(next(m for m in self.ctl.state.medicines
                                             if m.id == self.ids["b"])).stock, StockLevel.LOW)

    def test_notices_follow_store_count(self):
        # another device logs doses after this screen loaded
        self.store.record_dose(USER, self.ids["a"], 6, "08:00", taken_at=NOW)
        cached = next(m for m in self.ctl.state.medicines if m.id == self.ids["a"])
        self.assertEqual(cached.tablet_count, 10)
        self.assertTrue(self.ctl.take_dose(self.ids["a"], 1, "14:00"))
        messages = [n.message for n in self.ctl.drain_notices()]
        self.assertEqual(messages, ["Took 1 Paracetamol. 3 remaining.", "Low stock! Only 3 tablets left."])
        self.assertEqual(self._count("a"), 3)

    def test_out_of_stock_blocks_dose(self):
        mid = self.store.add_medicine(USER, MedicineRecord(
            id="", name="Cetirizine", expiry_date=TODAY + timedelta(days=90), tablet_count=0))
        self.ctl.load()
        prompt = self.ctl.prepare_dose(mid)
        self.assertEqual(prompt.blocked_reason, "Out of Stock")
        self.assertEqual(prompt.quantities, ())
        self.assertFalse(prompt.can_confirm)
        self.assertIs(self.ctl.card(prompt.medicine).stock, StockLevel.OUT)
        with mock.patch.object(self.store, "record_dose") as record_dose:
            self.assertFalse(self.ctl.take_dose(mid, 1))
        record_dose.assert_not_called()
        self.assertEqual(self.ctl.drain_notices()[-1].message, "Cannot log dose: Out of Stock")
        self.assertEqual(self.store.fetch_medicine(USER, mid).tablet_count, 0)

    def test_unknown_slot_rejected(self):
        self.assertFalse(self.ctl.take_dose(self.ids["a"], 1, "03:00"))
        self.assertEqual(self.ctl.drain_notices()[0].message,
                         "03:00 is not a scheduled dose time for Paracetamol")
        self.assertTrue(self.ctl.take_dose(self.ids["a"], 1, "08:00"))
        self.ctl.drain_notices()
        self.assertFalse(self.ctl.take_dose(self.ids["a"], 1, "08:00"))
        self.assertEqual(self.ctl.drain_notices()[0].message, "The 08:00 dose is already logged today")
        self.assertEqual(self._count("a"), 9)

    def test_expired_and_overdraw_rejected(self):
        self.assertFalse(self.ctl.take_dose(self.ids["c"], 1))
        self.assertIn("expired", self.ctl.drain_notices()[0].message)
        self.assertFalse(self.ctl.take_dose(self.ids["b"], 6))
        self.assertFalse(self.ctl.take_dose(self.ids["b"], 0))
        self.assertEqual(self._count("c"), 3)
        self.assertEqual(self._count("b"), 5)

    def test_dietary_confirmation_required(self):
        mid = self.store.add_medicine(USER, MedicineRecord(
            id="", name="Metronidazole", expiry_date=TODAY + timedelta(days=90), tablet_count=10,
            food_warnings=("Avoid alcohol",)))
        self.ctl.load()
        self.assertTrue(self.ctl.prepare_dose(mid).needs_dietary_confirmation)
        self.assertFalse(self.ctl.take_dose(mid, 1))
        self.assertTrue(self.ctl.take_dose(mid, 1, dietary_confirmed=True))

    def test_log_fetch_failure_degrades(self):
        with mock.patch.object(self.store, "fetch_today_dose_logs",
                               side_effect=TransientStoreError("offline")):
            self.store.record_dose(USER, self.ids["a"], 1, "08:00", taken_at=NOW)
            prompt = self.ctl.prepare_dose(self.ids["a"])
            self.assertTrue(prompt.logs_unavailable)
            self.assertEqual(prompt.available_slots, ("08:00", "14:00", "20:00"))
            self.assertTrue(self.ctl.take_dose(self.ids["a"], 1, "14:00"))
        self.assertEqual(self._count("a"), 8)

    def test_mutation_failure_leaves_state(self):
        before = self.ctl.state
        with mock.patch.object(self.store, "record_dose", side_effect=TransientStoreError("offline")):
            self.assertFalse(self.ctl.take_dose(self.ids["a"], 1, "08:00"))
        with mock.patch.object(self.store, "restock", side_effect=StoreAuthError("signed out")):
            self.assertFalse(self.ctl.restock(self.ids["c"], date(2027, 1, 1), 10))
        with mock.patch.object(self.store, "remove_medicine", side_effect=TransientStoreError("offline")):
            self.assertFalse(self.ctl.remove(self.ids["b"]))
        self.assertIs(self.ctl.state, before)
        notices = self.ctl.drain_notices()
        self.assertEqual(len(notices), 3)
        self.assertTrue(all(n.is_error for n in notices))
        self.assertTrue(notices[0].message.startswith("Failed to log dose"))

    def test_load_failure_keeps_last_known(self):
        meds = self.ctl.state.medicines
        with mock.patch.object(self.store, "fetch_medicines", side_effect=TransientStoreError("offline")):
            self.assertFalse(self.ctl.load())
        self.assertIs(self.ctl.state.phase, Phase.FAILED)
        self.assertEqual(self.ctl.state.medicines, meds)
        self.assertIn("offline", self.ctl.state.error)

    def test_restock_remove_acknowledge(self):
        self.assertTrue(self.ctl.acknowledge_alert(self.ids["c"]))
        self.assertEqual(self.ctl.pending_alerts(), [])
        self.assertTrue(self.ctl.restock(self.ids["c"], date(2027, 4, 1), 10))
        self.assertEqual(self._count("c"), 13)
        self.assertEqual(self.ctl.counts()[CabinetFilter.EXPIRED], 0)
        self.assertFalse(self.ctl.restock(self.ids["c"], date(2027, 4, 1), 0))
        self.assertTrue(self.ctl.remove(self.ids["b"]))
        self.assertEqual(self.ctl.drain_notices()[-1].message, "Amoxicillin removed from cabinet")
        self.assertEqual(len(self.ctl.state.medicines), 2)
        self.ctl.set_filter(CabinetFilter.EXPIRING_SOON)
        self.assertEqual(self.ctl.visible(), [])
        self.assertEqual(self.ctl.empty_message(), "No medicines expiring soon")


class TestSettings(unittest.TestCase):
    def test_defaults(self):
        s = CabinetSettings.from_env({})
        self.assertEqual((s.soon_window_days, s.low_stock_threshold, s.user_id, s.poll_seconds),
                         (30, 5, "local", 60))

    def test_env_overrides_and_fallbacks(self):
        s = CabinetSettings.from_env({"MEDCABINET_SOON_DAYS": "3", "MEDCABINET_LOW_STOCK": "many",
                                      "MEDCABINET_USER": " alice ", "MEDCABINET_POLL_SECONDS": "1"})
        self.assertEqual((s.soon_window_days, s.low_stock_threshold, s.user_id, s.poll_seconds),
                         (3, 5, "alice", 60))


class TestService(_TempStore):
    def test_alert_texts(self):
        meds = [
            _med("a", name="Ibuprofen", expiry_date=TODAY - timedelta(days=2), tablet_count=2),
            _med("b", name="Amoxicillin", expiry_date=TODAY + timedelta(days=3), tablet_count=4),
            _med("c", name="Cetirizine", expiry_date=TODAY + timedelta(days=300), tablet_count=1),
        ]
        alerts = svc.collect_alerts(meds, TODAY, CabinetSettings())
        self.assertEqual([a[0] for a in alerts], ["expiry", "low_stock"])
        self.assertEqual(alerts[0][3], "1 expired, 1 expiring soon. Tap to review.")
        self.assertEqual(alerts[1][3], "Ibuprofen, Amoxicillin +1 more - time to restock!")

        only_expired = svc.collect_alerts(meds[:1], TODAY, CabinetSettings(low_stock_threshold=1))
        self.assertEqual(only_expired[0][2:], ("Expired Medicine", "1 medicine has expired. Time to replace!"))
        self.assertEqual(svc.collect_alerts([_med(tablet_count=50)], TODAY, CabinetSettings()), [])

    def test_tracker_fires_once_per_day(self):
        self.store.add_medicine(USER, MedicineRecord(id="", name="Ibuprofen",
                                                     expiry_date=TODAY - timedelta(days=1), tablet_count=2))
        settings = CabinetSettings(user_id=USER)
        tracker = svc.AlertTracker()
        with mock.patch.object(svc, "notify") as notify:
            first = svc.check_once(self.store, settings, tracker, now=NOW)
            again = svc.check_once(self.store, settings, tracker, now=NOW + timedelta(hours=1))
            tomorrow = svc.check_once(self.store, settings, tracker, now=NOW + timedelta(days=1))
        self.assertEqual(len(first), 2)
        self.assertEqual(again, [])
        self.assertEqual(len(tomorrow), 2)
        self.assertEqual(notify.call_count, 4)

    def test_poll_survives_bad_data(self):
        settings = CabinetSettings(user_id=USER)
        tracker = svc.AlertTracker()
        with mock.patch.object(svc, "check_once", side_effect=ValueError("Invalid isoformat string")):
            with self.assertLogs("medcabinet", level="ERROR"):
                store = svc.poll_once(self.paths, settings, tracker, self.store)
        self.assertIs(store, self.store)
        with mock.patch.object(svc, "notify"):
            self.assertIs(svc.poll_once(self.paths, settings, tracker, store), self.store)

    def test_poll_without_key_retries_later(self):
        with self.assertLogs("medcabinet", level="WARNING"):
            store = svc.poll_once(self.paths, CabinetSettings(user_id=USER), svc.AlertTracker())
        self.assertIsNone(store)


class TestRingLog(unittest.TestCase):
    def test_keeps_last_lines(self):
        ring = _RingLog(max_lines=3)
        for i in range(5):
            ring.add(f"line {i}\n")
        ring.add("")
        self.assertEqual(ring.text(), "line 2\nline 3\nline 4")
        self.assertEqual(ring.tail(1), "line 4")
        ring.clear()
        self.assertEqual(ring.text(), "")


if __name__ == "__main__":
    unittest.main(verbosity=2)
