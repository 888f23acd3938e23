"""nsview - Main Textual application."""

import logging
import time
from functools import partial
from pathlib import Path
from queue import Empty, Queue

import click
from rich.text import Text
from textual.app import App, ComposeResult
from textual.widgets import Footer, Static, TabbedContent, TabPane, Tree
from textual.widgets.tree import TreeNode

from nsview.collector import collect_snapshot, load_snapshot
from nsview.config import CFG_PATH, AppConfig, load_config
from nsview.expansion import ExpansionPolicy, ExpansionReconciler, TreeAction
from nsview.models import DiscoveryGraph, NamespaceType
from nsview.monitor import DiscoveryMonitor, DiscoveryUpdate, MonitorEvent, RefreshFailed, SnapshotProvider
from nsview.trees import AffinityTree, NamespaceTree, TreeItem, UserNamespaceTree

logger = logging.getLogger(__name__)


class StatusBar(Static):
    """Status line showing what the last refresh discovered."""

    DEFAULT_CSS = """
    StatusBar {
        dock: top;
        height: 1;
        padding: 0 1;
        background: $surface;
    }
    """

    def update_status(self, update: DiscoveryUpdate) -> None:
        graph = update.graph
        refreshed = time.strftime("%H:%M:%S", time.localtime(update.timestamp))
        self.update(
            f"{len(graph.namespaces)} namespaces, {len(graph.processes)} processes, "
            f"{len(graph.containers)} containers | refreshed {refreshed} (#{update.seq})"
        )


class DiscoveryTree(Tree[str]):
    """Tree widget for one view of the discovery graph.

    Node data is the node id of the tree kind. The widget is rebuilt from
    scratch on every refresh, with its expansion state kept by a reconciler.
    """

    def __init__(self, kind, policy: ExpansionPolicy, **kwargs) -> None:
        super().__init__(kind.title, **kwargs)
        self.show_root = False
        self.kind = kind
        self.reconciler = ExpansionReconciler(kind, policy)

    def update_graph(self, graph: DiscoveryGraph) -> None:
        self.reconciler.refresh(graph)
        self.rebuild()

    def apply(self, action: TreeAction) -> None:
        self.reconciler.apply(action)
        self.rebuild()

    def rebuild(self) -> None:
        graph = self.reconciler.graph
        if graph is None:
            return
        expanded = self.reconciler.expanded
        cursor = self.cursor_line
        self.clear()
        for item in self.kind.items(graph):
            self._add_item(self.root, item, expanded)
        self.cursor_line = cursor

    def _add_item(self, parent: TreeNode[str], item: TreeItem, expanded: frozenset[str]) -> None:
        label = Text(item.label, style="dim" if item.dimmed else "")
        if not item.children:
            parent.add_leaf(label, data=item.id)
            return
        # Adding expanded nodes does not post NodeExpanded messages.
        node = parent.add(label, data=item.id, expand=item.id in expanded)
        for child in item.children:
            self._add_item(node, child, expanded)

    def on_tree_node_expanded(self, event: Tree.NodeExpanded[str]) -> None:
        if event.node.data is not None:
            self.reconciler.toggle(self.reconciler.expanded | {event.node.data})

    def on_tree_node_collapsed(self, event: Tree.NodeCollapsed[str]) -> None:
        if event.node.data is not None:
            self.reconciler.toggle(self.reconciler.expanded - {event.node.data})


class NsviewApp(App):
    """Main nsview application."""

    TITLE = "nsview"
    SUB_TITLE = "Linux namespace viewer"

    CSS = """
    Screen {
        layout: vertical;
    }

    TabbedContent {
        height: 1fr;
    }

    DiscoveryTree {
        border: solid $primary;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh", "Refresh"),
        ("e", "expand_all", "Expand all"),
        ("c", "collapse_all", "Collapse all"),
        ("s", "toggle_system", "System processes"),
    ]

    def __init__(
        self,
        config: AppConfig | None = None,
        provider: SnapshotProvider | None = None,
    ) -> None:
        """Initialize the NsviewApp."""
        super().__init__()
        self.config = config if config is not None else AppConfig()
        if provider is None:
            if self.config.snapshot_path:
                provider = partial(load_snapshot, self.config.snapshot_path)
            else:
                provider = collect_snapshot
        self._update_queue: Queue[MonitorEvent] = Queue()
        self._monitor = DiscoveryMonitor(
            self._update_queue, provider, poll_rate=self.config.refresh_interval
        )
        self._graph: DiscoveryGraph | None = None

    @property
    def monitor(self) -> DiscoveryMonitor:
        return self._monitor

    @property
    def graph(self) -> DiscoveryGraph | None:
        """The graph currently on display."""
        return self._graph

    def _policy(self) -> ExpansionPolicy:
        try:
            return ExpansionPolicy(self.config.expand_policy)
        except ValueError:
            logger.warning("unknown expand policy %r", self.config.expand_policy)
            return ExpansionPolicy.NEW_ROOTS

    def _kinds(self) -> list:
        kinds: list = [UserNamespaceTree()]
        kinds.extend(
            NamespaceTree(
                nstype,
                show_system=self.config.show_system_processes,
                mount_expand_limit=self.config.mount_expand_limit,
            )
            for nstype in NamespaceType
            if nstype is not NamespaceType.USER
        )
        kinds.append(AffinityTree())
        return kinds

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield StatusBar("Discovering...", id="status")
        policy = self._policy()
        with TabbedContent(id="views"):
            for kind in self._kinds():
                with TabPane(kind.title, id=f"tab-{kind.title}"):
                    yield DiscoveryTree(kind, policy, id=f"tree-{kind.title}")
        yield Footer()

    def on_mount(self) -> None:
        """Start the discovery monitor when the app is mounted."""
        self._monitor.start()
        self.set_interval(0.5, self._check_for_updates)

    def on_unmount(self) -> None:
        self._monitor.stop()

    def _check_for_updates(self) -> None:
        """Check the queue for discovery updates and refresh the UI."""
        update = None
        while True:
            try:
                event = self._update_queue.get_nowait()
            except Empty:
                break
            if isinstance(event, RefreshFailed):
                self.notify(f"Refresh failed: {event.error}", severity="error")
            else:
                update = event

        if update is not None:
            self._update_ui(update)

    def _update_ui(self, update: DiscoveryUpdate) -> None:
        self._graph = update.graph
        self.query_one(StatusBar).update_status(update)
        for tree in self.query(DiscoveryTree):
            tree.update_graph(update.graph)

    def _active_tree(self) -> DiscoveryTree | None:
        pane = self.query_one(TabbedContent).active_pane
        if pane is None:
            return None
        return pane.query_one(DiscoveryTree)

    def action_refresh(self) -> None:
        if not self._monitor.refresh():
            self.notify("Refresh already in progress")

    def action_expand_all(self) -> None:
        tree = self._active_tree()
        if tree is not None:
            tree.apply(TreeAction.EXPAND_ALL)

    def action_collapse_all(self) -> None:
        tree = self._active_tree()
        if tree is not None:
            tree.apply(TreeAction.COLLAPSE_ALL)

    def action_toggle_system(self) -> None:
        """Show or hide system processes in the namespace views."""
        show = not self.config.show_system_processes
        self.config.show_system_processes = show
        for tree in self.query(DiscoveryTree):
            if isinstance(tree.kind, NamespaceTree):
                tree.kind.show_system = show
                tree.rebuild()
        self.notify(f"System processes: {'shown' if show else 'hidden'}")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()


@click.command()
@click.option("--snapshot", type=click.Path(exists=True, dir_okay=False),
              help="Show a discovery snapshot JSON file instead of the local host")
@click.option("--interval", type=float, help="Refresh interval in seconds")
@click.option("--expand", type=click.Choice([policy.value for policy in ExpansionPolicy]),
              help="Which new tree nodes to expand automatically")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              default=CFG_PATH, show_default=True, help="Configuration file")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Write logs to this file")
@click.option("-v", "--verbose", is_flag=True, help="Log debug messages")
def main(snapshot, interval, expand, config_path, log_file, verbose) -> None:
    """Browse Linux namespaces, processes, mounts and CPU affinities."""
    if log_file:
        logging.basicConfig(
            filename=log_file,
            level=logging.DEBUG if verbose else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    config = load_config(config_path)
    if snapshot:
        config.snapshot_path = snapshot
    if interval is not None:
        config.refresh_interval = interval
    if expand:
        config.expand_policy = expand
    NsviewApp(config).run()


if __name__ == "__main__":
    main()
