# main.py
# Medicine Cabinet (KivyMD) - cabinet list, expiry/stock badges, dose logging, new strips.
#
# - Run normally:            python main.py
# - Seed sample medicines:   python main.py --demo
#
# Buildozer notes (in buildozer.spec):
#   requirements = python3,kivy,kivymd,pyjnius,cryptography
#   services = Cabinet:service/cabinet_service.py
#   android.permissions = POST_NOTIFICATIONS

import sys
from datetime import date, timedelta
from typing import List, Optional

from kivy.clock import Clock
from kivy.core.window import Window
from kivy.lang import Builder
from kivy.utils import platform as _kivy_platform

from kivymd.app import MDApp
from kivymd.uix.boxlayout import MDBoxLayout
from kivymd.uix.button import MDFlatButton, MDRaisedButton
from kivymd.uix.dialog import MDDialog
from kivymd.uix.label import MDLabel
from kivymd.uix.list import IconLeftWidget, ThreeLineIconListItem
from kivymd.uix.selectioncontrol import MDCheckbox
from kivymd.uix.textfield import MDTextField

import classifier
from applog import RING, clear_log, logger, set_log_file
from cabinet import CabinetController, CabinetFilter, MedicineCard
from classifier import ExpiryBucket, StockLevel
from inventory import EncryptedInventoryStore, MedicineRecord, StoreError, seed
from settings import STRIP_QUANTITIES, CabinetSettings
from vault import VaultPaths, get_or_create_key

if _kivy_platform != "android" and hasattr(Window, "size"):
    Window.size = (420, 760)

_BUCKET_ICONS = {
    ExpiryBucket.EXPIRED: "alert-circle",
    ExpiryBucket.EXPIRING_SOON: "clock-alert-outline",
    ExpiryBucket.SAFE: "pill",
    None: "pill",
}

_FILTER_LABELS = {
    CabinetFilter.ALL: "All",
    CabinetFilter.EXPIRING_SOON: "Expiring Soon",
    CabinetFilter.EXPIRED: "Expired",
}

KV = """
MDScreen:
    MDBoxLayout:
        orientation: "vertical"

        MDTopAppBar:
            title: "Medicine Cabinet"
            elevation: 4
            right_action_items: [["refresh", lambda x: app.refresh()], ["text-box-outline", lambda x: app.show_log_dialog()]]

        MDBoxLayout:
            size_hint_y: None
            height: "56dp"
            padding: "8dp"
            spacing: "8dp"

            MDRaisedButton:
                id: filter_all
                text: "All"
                on_release: app.select_filter("all")

            MDRaisedButton:
                id: filter_expiring_soon
                text: "Expiring Soon"
                on_release: app.select_filter("expiring_soon")

            MDRaisedButton:
                id: filter_expired
                text: "Expired"
                on_release: app.select_filter("expired")

        MDLabel:
            id: summary_line
            text: ""
            theme_text_color: "Secondary"
            size_hint_y: None
            height: "24dp"
            padding: "12dp", 0

        MDLabel:
            id: notice
            text: ""
            size_hint_y: None
            height: self.texture_size[1] + dp(8)
            padding: "12dp", "4dp"

        ScrollView:
            MDList:
                id: medicine_list
"""


def demo_medicines(today: date) -> List[MedicineRecord]:
    return [
        MedicineRecord(id="", name="Paracetamol 500mg", category="Analgesic",
                       expiry_date=today + timedelta(days=200), tablet_count=18,
                       schedule_times=("08:00", "14:00", "20:00")),
        MedicineRecord(id="", name="Amoxicillin 250mg", category="Antibiotic",
                       expiry_date=today + timedelta(days=12), tablet_count=4,
                       doses_per_day=2, schedule_times=("08:00", "20:00"),
                       food_warnings=("Take after food",)),
        MedicineRecord(id="", name="Ibuprofen 400mg", category="NSAID",
                       expiry_date=today - timedelta(days=20), tablet_count=9,
                       food_warnings=("Avoid alcohol",)),
    ]


class MedicineCabinetApp(MDApp):
    def __init__(self, demo: bool = False, **kwargs):
        super().__init__(**kwargs)
        self.demo = demo
        self.controller: Optional[CabinetController] = None
        self._dialog: Optional[MDDialog] = None

    def build(self):
        self.title = "Medicine Cabinet"
        self.theme_cls.theme_style = "Light"
        self.theme_cls.primary_palette = "Teal"
        return Builder.load_string(KV)

    def on_start(self):
        paths = VaultPaths.default()
        set_log_file(paths.log_path)
        logger.info(f"app start platform={_kivy_platform} base={paths.base}")

        settings = CabinetSettings.from_env()
        try:
            store = EncryptedInventoryStore(get_or_create_key(paths.key_path), paths.db_path, paths.tmp_dir)
            if self.demo and not store.fetch_medicines(settings.user_id):
                seed(store, settings.user_id, demo_medicines(date.today()))
        except (StoreError, OSError):
            logger.exception("opening cabinet store failed")
            self.root.ids.notice.text = "Could not open the cabinet on this device."
            return

        self.controller = CabinetController(store, settings.user_id, settings)
        self.controller.subscribe(lambda _state: Clock.schedule_once(lambda *_: self.render(), 0))

        Clock.schedule_once(lambda *_: self.refresh(), 0.3)

    # -------------------------
    # Refresh / render
    # -------------------------
    def refresh(self):
        if not self.controller:
            return
        self.controller.load()
        self.flush_notices()
        pending = self.controller.pending_alerts()
        if pending and self._dialog is None:
            self.show_expiry_alert(pending[0].id)

    def select_filter(self, name: str):
        if self.controller:
            self.controller.set_filter(CabinetFilter(name))

    def render(self):
        if not self.controller:
            return
        ids = self.root.ids
        state = self.controller.state
        counts = self.controller.counts()

        for f, label in _FILTER_LABELS.items():
            btn = ids[f"filter_{f.value}"]
            n = counts[f]
            btn.text = f"{label} ({n})" if n else label
            btn.md_bg_color = (self.theme_cls.primary_color if state.filter is f
                               else (0.6, 0.6, 0.6, 1))

        summary = self.controller.summary()
        ids.summary_line.text = (f"{summary.total} medicines  |  {summary.low_stock} low  |  "
                                 f"{summary.out_of_stock} out of stock")

        ml = ids.medicine_list
        ml.clear_widgets()
        visible = self.controller.visible()
        if not visible:
            ml.add_widget(MDLabel(text=self.controller.empty_message(), halign="center",
                                  theme_text_color="Secondary", size_hint_y=None, height="64dp"))
            return
        for m in visible:
            ml.add_widget(self._card_widget(self.controller.card(m)))

    def _card_widget(self, card: MedicineCard) -> ThreeLineIconListItem:
        m = card.medicine
        stock = f"{m.tablet_count} tablets"
        if card.stock is StockLevel.LOW:
            stock += " (low)"
        elif card.stock is StockLevel.OUT:
            stock = "Out of stock"
        item = ThreeLineIconListItem(
            text=f"{m.name.upper()}  -  {card.badge}",
            secondary_text=f"Expires {card.expires}  |  {stock}",
            tertiary_text=m.category or card.status,
        )
        item.add_widget(IconLeftWidget(icon=_BUCKET_ICONS[card.bucket]))
        item.on_release = lambda mid=m.id: self.show_actions(mid)
        return item

    def flush_notices(self):
        if not self.controller:
            return
        notices = self.controller.drain_notices()
        if notices:
            self.root.ids.notice.text = "\n".join(n.message for n in notices)
            self.root.ids.notice.theme_text_color = "Error" if any(n.is_error for n in notices) else "Primary"

    def _after_action(self, *_):
        self._close_dialog()
        self.flush_notices()

    # -------------------------
    # Dialogs
    # -------------------------
    def _open(self, dialog: MDDialog):
        self._close_dialog()
        self._dialog = dialog
        dialog.bind(on_dismiss=self._forget_dialog)
        dialog.open()

    def _forget_dialog(self, dialog):
        if self._dialog is dialog:
            self._dialog = None

    def _close_dialog(self):
        if self._dialog is not None:
            d, self._dialog = self._dialog, None
            d.dismiss()

    def show_actions(self, medicine_id: str):
        medicine = next((m for m in self.controller.state.medicines if m.id == medicine_id), None)
        if medicine is None:
            return
        card = self.controller.card(medicine)
        buttons = [MDFlatButton(text="Remove", on_release=lambda *_: self.confirm_remove(medicine_id)),
                   MDFlatButton(text="New Strip", on_release=lambda *_: self.show_new_strip_dialog(medicine_id))]
        if card.can_take_dose:
            buttons.append(MDRaisedButton(text="Take Dose",
                                          on_release=lambda *_: self.show_take_dose_dialog(medicine_id)))
        else:
            buttons.append(MDRaisedButton(text="Details",
                                          on_release=lambda *_: self.show_expiry_alert(medicine_id)))
        self._open(MDDialog(
            title=medicine.name,
            text=f"{card.status}\nExpires {card.expires}\n{medicine.tablet_count} tablets in stock",
            buttons=buttons,
        ))

    def show_take_dose_dialog(self, medicine_id: str):
        prompt = self.controller.prepare_dose(medicine_id)
        self.flush_notices()
        if prompt is None:
            return
        m = prompt.medicine
        if not prompt.can_confirm:
            self._open(MDDialog(
                title=m.name,
                text="All doses taken today." if prompt.blocked_reason == "All Doses Taken"
                else f"Cannot take a dose: {prompt.blocked_reason}.",
                buttons=[MDFlatButton(text="OK", on_release=lambda *_: self._close_dialog())],
            ))
            return

        chosen = {"slot": prompt.suggested_slot, "qty": prompt.quantities[0]}
        content = MDBoxLayout(orientation="vertical", spacing="8dp", padding="8dp", size_hint_y=None)
        content.bind(minimum_height=content.setter("height"))

        def choice_row(values, key, fmt):
            row = MDBoxLayout(orientation="horizontal", spacing="6dp", size_hint_y=None, height="44dp")
            buttons = []

            def pick(value):
                chosen[key] = value
                for b, v in buttons:
                    b.md_bg_color = self.theme_cls.primary_color if v == value else (0.75, 0.75, 0.75, 1)
            for v in values:
                b = MDRaisedButton(text=fmt(v), on_release=lambda _, v=v: pick(v))
                buttons.append((b, v))
                row.add_widget(b)
            pick(chosen[key])
            return row

        if m.schedule_times:
            content.add_widget(MDLabel(text="Which dose?", bold=True, size_hint_y=None, height="24dp"))
            content.add_widget(choice_row(prompt.available_slots, "slot", classifier.format_slot))
            if prompt.logs_unavailable:
                content.add_widget(MDLabel(text="Could not check today's log; earlier doses may not show.",
                                           theme_text_color="Secondary", size_hint_y=None, height="36dp"))
        content.add_widget(MDLabel(text="How many tablets?", bold=True, size_hint_y=None, height="24dp"))
        content.add_widget(choice_row(prompt.quantities, "qty", str))

        diet = None
        if prompt.needs_dietary_confirmation:
            warn = MDBoxLayout(orientation="horizontal", size_hint_y=None, height="48dp")
            diet = MDCheckbox(size_hint=(None, None), size=("40dp", "40dp"))
            warn.add_widget(diet)
            warn.add_widget(MDLabel(text="I have read: " + "; ".join(m.food_warnings)))
            content.add_widget(warn)

        def confirm(*_):
            self.controller.take_dose(medicine_id, chosen["qty"], chosen["slot"],
                                      dietary_confirmed=bool(diet and diet.active))
            self._after_action()

        self._open(MDDialog(
            title=f"Take {m.name}",
            type="custom",
            content_cls=content,
            buttons=[MDFlatButton(text="Cancel", on_release=lambda *_: self._close_dialog()),
                     MDRaisedButton(text="Confirm Dose", on_release=confirm)],
        ))

    def show_new_strip_dialog(self, medicine_id: str):
        medicine = next((m for m in self.controller.state.medicines if m.id == medicine_id), None)
        if medicine is None:
            return
        default_expiry = classifier.default_strip_expiry(self.controller.today())

        content = MDBoxLayout(orientation="vertical", spacing="10dp", padding="10dp", size_hint_y=None)
        content.bind(minimum_height=content.setter("height"))
        expiry = MDTextField(hint_text="New expiry (YYYY-MM)", text=default_expiry.strftime("%Y-%m"),
                             helper_text="e.g. 2027-01", helper_text_mode="on_error")
        quantity = MDTextField(hint_text="Tablets in new strip", text=str(STRIP_QUANTITIES[0]),
                               input_filter="int", helper_text="At least 1", helper_text_mode="on_error")
        quick = MDBoxLayout(orientation="horizontal", spacing="8dp", size_hint_y=None, height="44dp")
        for q in STRIP_QUANTITIES:
            quick.add_widget(MDFlatButton(text=f"+{q}", on_release=lambda _, q=q: setattr(quantity, "text", str(q))))
        for w in (expiry, quantity, quick):
            content.add_widget(w)

        def save(*_):
            try:
                new_expiry = classifier.parse_expiry(expiry.text)
            except ValueError:
                expiry.error = True
                return
            try:
                qty = int(quantity.text.strip())
            except ValueError:
                quantity.error = True
                return
            if self.controller.restock(medicine_id, new_expiry, qty):
                self._after_action()
            else:
                self.flush_notices()

        self._open(MDDialog(
            title=f"Add New Strip - {medicine.name}",
            type="custom",
            content_cls=content,
            buttons=[MDFlatButton(text="Cancel", on_release=lambda *_: self._close_dialog()),
                     MDRaisedButton(text="Update Strip", on_release=save)],
        ))

    def confirm_remove(self, medicine_id: str):
        medicine = next((m for m in self.controller.state.medicines if m.id == medicine_id), None)
        if medicine is None:
            return

        def remove(*_):
            self.controller.remove(medicine_id)
            self._after_action()

        self._open(MDDialog(
            title="Remove Medicine?",
            text=f'Are you sure you want to remove "{medicine.name}" from your cabinet? This cannot be undone.',
            buttons=[MDFlatButton(text="Cancel", on_release=lambda *_: self._close_dialog()),
                     MDRaisedButton(text="Remove", on_release=remove)],
        ))

    def show_expiry_alert(self, medicine_id: str):
        medicine = next((m for m in self.controller.state.medicines if m.id == medicine_id), None)
        if medicine is None:
            return
        today = self.controller.today()

        def dismiss(*_):
            self.controller.acknowledge_alert(medicine_id)
            self._after_action()

        self._open(MDDialog(
            title=f"{medicine.name} has expired",
            text=(f"{classifier.expiry_alert_message(medicine, today)} "
                  f"(expired on {classifier.format_expiry(medicine.expiry_date)}).\n"
                  "Consuming expired medicine can be ineffective or harmful."),
            buttons=[MDFlatButton(text="Remove", on_release=lambda *_: self.confirm_remove(medicine_id)),
                     MDFlatButton(text="New Strip", on_release=lambda *_: self.show_new_strip_dialog(medicine_id)),
                     MDRaisedButton(text="I Understand", on_release=dismiss)],
        ))

    def show_log_dialog(self):
        def clear(*_):
            clear_log()
            logger.info("log cleared")
            self._close_dialog()

        self._open(MDDialog(
            title="Debug log",
            text=RING.tail(60) or "(empty)",
            buttons=[MDFlatButton(text="Clear", on_release=clear),
                     MDRaisedButton(text="Close", on_release=lambda *_: self._close_dialog())],
        ))


# -------------------------
# Entrypoint
# -------------------------
def main():
    MedicineCabinetApp(demo="--demo" in sys.argv).run()


if __name__ == "__main__":
    main()
