#!/usr/bin/env python3
"""
Save Slot Rotator - Textual TUI Version
A terminal user interface for browsing backup slots, restoring them and
running the backup monitor.
"""

import time
import threading
from pathlib import Path
from typing import Optional, List

from rich.text import Text

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal, Vertical
from textual.widgets import Header, Footer, Button, Select, Static, DataTable, Label
from textual.binding import Binding
from textual.screen import ModalScreen
from textual import on

from rotator import (
    DEFAULT_CONFIG_PATH,
    ConfigError,
    RotatorConfig,
    SaveInstance,
    SlotInfo,
    MonitorService,
    ProcessActivityProbe,
    RestoreOrchestrator,
    load_rotator_config,
    list_save_instances,
    list_slots,
    make_copier,
    setup_logging,
    format_age,
    format_file_size,
    get_directory_size,
)


class ConfirmDialog(ModalScreen[bool]):
    """A modal confirmation dialog."""

    BINDINGS = [
        ("r", "confirm", "Confirm"),
        ("escape", "cancel", "Cancel"),
        ("left", "focus_cancel", "Focus Cancel"),
        ("right", "focus_confirm", "Focus Confirm"),
    ]

    def __init__(self, title: str, message: str, confirm_text: str = "Yes", cancel_text: str = "No"):
        super().__init__()
        self.title = title
        self.message = message
        self.confirm_text = confirm_text
        self.cancel_text = cancel_text

    def compose(self) -> ComposeResult:
        yield Container(
            Static(self.title or "Dialog", classes="dialog-title"),
            Static(self.message, classes="dialog-message"),
            Horizontal(
                Button(self.cancel_text, variant="default", id="cancel"),
                Button(self.confirm_text, variant="error", id="confirm"),
                classes="dialog-buttons"
            ),
            classes="dialog"
        )

    @on(Button.Pressed, "#confirm")
    def on_confirm(self):
        self.dismiss(True)

    @on(Button.Pressed, "#cancel")
    def on_cancel(self):
        self.dismiss(False)

    def action_confirm(self):
        self.dismiss(True)

    def action_cancel(self):
        self.dismiss(False)

    def action_focus_cancel(self):
        self.query_one("#cancel", Button).focus()

    def action_focus_confirm(self):
        self.query_one("#confirm", Button).focus()


class RotatorApp(App):
    """Main Textual application for slot browsing and restore."""

    CSS = """
    .section-header {
        text-style: bold;
        color: $accent;
        margin: 1 0 0 0;
    }
    .instance-row {
        height: auto;
    }
    .instance-label {
        width: 12;
        padding: 1 1;
    }
    #instance_select {
        width: 1fr;
    }
    #slot_table {
        height: 1fr;
    }
    .slot-buttons {
        height: auto;
    }
    .slot-buttons Button {
        margin: 0 1 0 0;
    }
    #monitor_state {
        padding: 0 1;
        color: $text-muted;
    }
    ConfirmDialog {
        align: center middle;
    }
    .dialog {
        width: 60;
        height: auto;
        border: thick $warning;
        background: $surface;
        padding: 1 2;
    }
    .dialog-title {
        text-style: bold;
        margin: 0 0 1 0;
    }
    .dialog-buttons {
        height: auto;
        align: right middle;
        margin: 1 0 0 0;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "restore_slot", "Restore Selected"),
        Binding("m", "toggle_monitor", "Start/Stop Monitor"),
        Binding("f5", "refresh", "Refresh"),
    ]

    def __init__(self, config_path: Optional[Path] = None):
        super().__init__()
        self.title = "💾 Save Slot Rotator"
        self.sub_title = ""

        self.config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        self.config = RotatorConfig.from_dict(load_rotator_config(self.config_path))
        setup_logging(self.config.backup_root, console=False)

        self.service = MonitorService(self.config)
        self.probe = ProcessActivityProbe(self.config.game_processes)
        self.instances: List[SaveInstance] = []
        self.current_instance: Optional[SaveInstance] = None
        self.slots: List[SlotInfo] = []
        self.game_active = False
        self._restoring = False
        self._polling_game = False

    def compose(self) -> ComposeResult:
        yield Header()
        yield Vertical(
            Static("🌍 Save Instance", classes="section-header"),
            Horizontal(
                Label("Save:", classes="instance-label"),
                Select(
                    options=[("No saves found", None)],
                    prompt="Choose a save...",
                    id="instance_select",
                    allow_blank=True
                ),
                classes="instance-row"
            ),
            Static("📋 Backup Slots", classes="section-header"),
            DataTable(id="slot_table", zebra_stripes=True),
            Horizontal(
                Button("🔄 Restore Selected", variant="warning", id="restore_slot"),
                Button("▶ Start Monitor", variant="success", id="toggle_monitor"),
                Button("🔄 Refresh", variant="primary", id="refresh_slots"),
                classes="slot-buttons"
            ),
            Static("", id="monitor_state"),
        )
        yield Footer()

    def on_mount(self):
        table = self.query_one("#slot_table", DataTable)
        table.add_columns("Slot", "Modified", "Age", "Size")
        table.cursor_type = "row"

        self.update_instance_list()
        self.update_monitor_state()
        self.poll_game_state()
        self.set_interval(1.0, self.update_monitor_state)
        self.set_interval(2.0, self.poll_game_state)

    def on_unmount(self):
        self.service.stop(timeout=5)

    def update_instance_list(self):
        """Reload the save instance selector."""
        select = self.query_one("#instance_select", Select)
        self.instances = list_save_instances(self.config.save_root, self.config.backup_root)
        if self.instances:
            options = [(instance.key, instance.key) for instance in self.instances]
            select.set_options(options)
            keys = [key for _, key in options]
            if self.current_instance and self.current_instance.key in keys:
                select.value = self.current_instance.key
            else:
                select.value = keys[0]
        else:
            select.set_options([(f"No saves under {self.config.save_root}", None)])
            self.current_instance = None
            self.refresh_slot_list()

    @on(Select.Changed, "#instance_select")
    def on_instance_selected(self, event: Select.Changed):
        self.current_instance = next(
            (instance for instance in self.instances if instance.key == event.value), None)
        self.refresh_slot_list()

    def refresh_slot_list(self):
        """Reload the slot table for the selected save."""
        table = self.query_one("#slot_table", DataTable)
        table.clear()
        self.slots = list_slots(self.current_instance) if self.current_instance else []
        now = time.time()
        for slot in self.slots:
            label = Text(slot.label, style="bold yellow" if slot.is_recovery else "bold")
            if slot.is_empty:
                table.add_row(label, "(empty)", "", "")
                continue
            table.add_row(
                label,
                slot.modified.strftime("%Y-%m-%d %H:%M:%S"),
                format_age(now - slot.mtime),
                format_file_size(get_directory_size(slot.path)),
            )

    def poll_game_state(self):
        """Scan the process table in a worker thread."""
        if self._polling_game:
            return
        self._polling_game = True

        def probe_worker():
            active = self.game_active
            try:
                active = self.probe()
            finally:
                self.call_from_thread(self.on_game_state, active)

        threading.Thread(target=probe_worker, daemon=True).start()

    def on_game_state(self, active: bool):
        self._polling_game = False
        self.game_active = active
        self.update_monitor_state()

    def update_monitor_state(self):
        state = self.service.state
        game = "running" if self.game_active else "not running"
        self.query_one("#monitor_state", Static).update(
            f"[chartreuse]Monitor:[/] {state}    [chartreuse]Game:[/] {game}    "
            f"[chartreuse]Every:[/] {self.config.save_frequency:g} min, {self.config.save_count} slots"
        )
        button = self.query_one("#toggle_monitor", Button)
        button.label = "⏹ Stop Monitor" if self.service.is_running else "▶ Start Monitor"

    @on(Button.Pressed, "#restore_slot")
    def on_restore_slot(self):
        table = self.query_one("#slot_table", DataTable)
        if self.current_instance is None or not self.slots:
            self.notify("Please select a backup slot to restore", severity="warning")
            return
        if self._restoring:
            self.notify("A restore is already running", severity="warning")
            return
        slot = self.slots[table.cursor_row]
        if slot.is_empty:
            self.notify("That slot is reserved but holds no backup yet", severity="warning")
            return
        if self.game_active:
            self.notify("Close the game before restoring", severity="error")
            return

        instance = self.current_instance

        def handle_restore_confirmation(confirmed: bool | None):
            if confirmed:
                self.perform_restore(instance, slot)

        self.push_screen(
            ConfirmDialog(
                "Confirm Restore",
                f"This will replace the live save of {instance.key} with '{slot.label}'.\n\n"
                "The current state is kept as 'latest recovered'.",
                "Restore",
                "Cancel"
            ),
            handle_restore_confirmation
        )

    def perform_restore(self, instance: SaveInstance, slot: SlotInfo):
        orchestrator = RestoreOrchestrator(self.config, make_copier(self.config), self.probe)
        self._restoring = True

        def restore_worker():
            try:
                result = orchestrator.restore(instance, slot.path)
                self.call_from_thread(self.on_restore_complete, result.success, result.preserved_path)
            except Exception as e:
                self.call_from_thread(self.on_restore_error, str(e))
            finally:
                self.call_from_thread(self.on_restore_finished)

        thread = threading.Thread(target=restore_worker, daemon=True)
        thread.start()

    def on_restore_complete(self, success: bool, preserved_path: Optional[Path]):
        if success:
            self.notify("Backup restored successfully!", severity="information")
        else:
            self.notify(f"Restore failed; previous save kept at {preserved_path}", severity="error")

    def on_restore_error(self, error: str):
        self.notify(f"Restore failed: {error}", severity="error")

    def on_restore_finished(self):
        self._restoring = False
        self.refresh_slot_list()

    @on(Button.Pressed, "#toggle_monitor")
    def on_toggle_monitor(self):
        if self.service.is_running:
            def stop_worker():
                self.service.stop()
                self.call_from_thread(self.notify, "Backup monitor stopped", severity="information")

            threading.Thread(target=stop_worker, daemon=True).start()
        else:
            self.service.start()
            self.notify("Backup monitor started", severity="information")
        self.update_monitor_state()

    @on(Button.Pressed, "#refresh_slots")
    def on_refresh_slots(self):
        self.action_refresh()

    def action_refresh(self):
        self.update_instance_list()
        self.refresh_slot_list()

    def action_restore_slot(self):
        self.on_restore_slot()

    def action_toggle_monitor(self):
        self.on_toggle_monitor()


def main():
    """Run the Textual save rotator application."""
    try:
        app = RotatorApp()
    except ConfigError as e:
        print(f"Invalid configuration: {e}")
        raise SystemExit(1)
    app.run()


if __name__ == "__main__":
    main()
