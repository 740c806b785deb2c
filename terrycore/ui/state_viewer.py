"""
State viewer widget for inspecting recorded state.

Provides a split-panel view: resource list on the left,
record details on the right, with a toggle between
Resources and Lock views.
"""

import json
import logging
from typing import Iterable, Optional

from PySide6.QtWidgets import (
    QWidget, QVBoxLayout, QHBoxLayout, QSplitter,
    QListWidget, QTextEdit, QPushButton, QLabel,
    QButtonGroup,
)
from PySide6.QtCore import Qt
from PySide6.QtGui import QFont

from ..core.engine import Engine
from ..core.errors import EngineError
from ..security.redactor import OutputRedactor
from ..security.sanitizer import SecurityError

logger = logging.getLogger(__name__)


class StateViewerWidget(QWidget):
    """
    Widget for viewing state records and the state lock.

    Layout:
    - Top bar: resource count label + Refresh button
    - Middle: splitter with resource list (left) and detail view (right)
    - Bottom: Resources / Lock toggle buttons

    Sensitive attributes are masked using the resource type policies of the
    engine's registry, plus any field names passed as extra_sensitive.
    """

    def __init__(
        self,
        parent: Optional[QWidget] = None,
        extra_sensitive: Iterable[str] = (),
        font_family: str = "monospace",
        font_size: int = 9,
    ):
        super().__init__(parent)
        self._engine: Optional[Engine] = None
        self._extra_sensitive = frozenset(extra_sensitive)
        self._init_ui(font_family, font_size)

    def _init_ui(self, font_family: str, font_size: int):
        layout = QVBoxLayout(self)

        # --- Top bar ---
        top_bar = QHBoxLayout()
        self._count_label = QLabel("State Resources")
        top_bar.addWidget(self._count_label)
        top_bar.addStretch()

        self._refresh_button = QPushButton("Refresh")
        self._refresh_button.clicked.connect(self._on_refresh)
        top_bar.addWidget(self._refresh_button)
        layout.addLayout(top_bar)

        # --- Splitter: resource list + detail view ---
        self._splitter = QSplitter(Qt.Orientation.Horizontal)

        self._resource_list = QListWidget()
        self._resource_list.currentRowChanged.connect(self._on_resource_selected)
        self._splitter.addWidget(self._resource_list)

        self._detail_view = QTextEdit()
        self._detail_view.setReadOnly(True)
        self._detail_view.setFont(QFont(font_family, font_size))
        self._splitter.addWidget(self._detail_view)

        self._splitter.setStretchFactor(0, 1)
        self._splitter.setStretchFactor(1, 2)

        layout.addWidget(self._splitter, stretch=1)

        # --- Bottom toggle: Resources / Lock ---
        toggle_layout = QHBoxLayout()

        self._resources_button = QPushButton("Resources")
        self._resources_button.setCheckable(True)
        self._resources_button.setChecked(True)

        self._lock_button = QPushButton("Lock")
        self._lock_button.setCheckable(True)

        self._toggle_group = QButtonGroup(self)
        self._toggle_group.setExclusive(True)
        self._toggle_group.addButton(self._resources_button, 0)
        self._toggle_group.addButton(self._lock_button, 1)
        self._toggle_group.idClicked.connect(self._on_view_toggled)

        toggle_layout.addWidget(self._resources_button)
        toggle_layout.addWidget(self._lock_button)
        toggle_layout.addStretch()
        layout.addLayout(toggle_layout)

    def set_engine(self, engine: Engine) -> None:
        """Set the Engine and load initial data."""
        self._engine = engine
        self._load_resources()

    def _on_refresh(self):
        if self._resources_button.isChecked():
            self._load_resources()
        else:
            self._load_lock()

    def _load_resources(self):
        self._resource_list.clear()
        self._detail_view.clear()

        if not self._engine:
            self._count_label.setText("State Resources")
            return

        try:
            records = self._engine.state_list()
        except EngineError as e:
            logger.error(f"Failed to read state: {e}")
            self._count_label.setText("State Resources")
            self._detail_view.setPlainText(f"Failed to read state: {e}")
            return

        self._count_label.setText(f"State Resources ({len(records)})")
        for record in records:
            self._resource_list.addItem(record.address)

    def _load_lock(self):
        self._detail_view.clear()
        if not self._engine:
            return

        try:
            info = self._engine.lock_info()
        except EngineError as e:
            logger.error(f"Failed to read state lock: {e}")
            self._detail_view.setPlainText(f"Failed to read state lock: {e}")
            return

        if info is None:
            self._detail_view.setPlainText("State is not locked.")
        else:
            self._detail_view.setPlainText(f"Locked by {info.describe()}")

    def _sensitive_fields(self, resource_type: str) -> frozenset:
        registry = self._engine.registry
        if resource_type in registry:
            return registry.policy(resource_type).sensitive_fields | self._extra_sensitive
        return self._extra_sensitive

    def record_details(self, address: str) -> str:
        """Redacted JSON rendering of one state record."""
        record = self._engine.state_show(address)
        sensitive = self._sensitive_fields(record.type)

        data = record.to_dict()
        data["attributes"] = OutputRedactor.mask_attributes(record.attributes, sensitive)
        redactor = OutputRedactor()
        redactor.add_attributes(record.attributes, sensitive)
        return redactor.redact(json.dumps(data, indent=2, sort_keys=True))

    def _on_resource_selected(self, row: int):
        if row < 0 or not self._engine:
            self._detail_view.clear()
            return

        item = self._resource_list.item(row)
        if item is None:
            return

        try:
            details = self.record_details(item.text())
        except (EngineError, SecurityError) as e:
            logger.warning(f"Cannot show {item.text()}: {e}")
            details = str(e)
        self._detail_view.setPlainText(details)

    def _on_view_toggled(self, button_id: int):
        """Switch between Resources and Lock view."""
        if button_id == 0:
            self._resource_list.setVisible(True)
            self._load_resources()
        else:
            # Lock view: hide list, show lock holder in detail pane
            self._resource_list.setVisible(False)
            self._load_lock()
