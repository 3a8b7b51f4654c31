from pathlib import Path

from platformdirs import user_config_path

_appname = "cclsview"
_author = "ccls-project"

_cclsview_pkg_path = Path(__file__).parent.resolve()
_cclsview_config_path = user_config_path(appname=_appname, appauthor=_author)

CCLSVIEW_CONFIG_FILE = str(_cclsview_config_path / "cclsview.yml")
CCLSVIEW_ICON_DIR = str(_cclsview_pkg_path / "resources" / "icons")

STATUS_PREFIX = "ccls"

# RPC methods of the ccls engine
METHOD_CALL = "$ccls/call"
METHOD_INHERITANCE = "$ccls/inheritance"
METHOD_INFO = "$ccls/info"

# command identifiers
CMD_RESTART = "ccls.restart"
CMD_RESTART_LAZY = "ccls.restartLazy"
CMD_HIERARCHY_GOTO = "ccls.hierarchy.goto"
CMD_CALL_USE_CALLERS = "ccls.call.useCallers"
CMD_CALL_USE_CALLEES = "ccls.call.useCallees"
CMD_CLOSE_CALL_HIERARCHY = "ccls.closeCallHierarchy"
CMD_INHERITANCE_USE_BASE = "ccls.inheritance.useBase"
CMD_INHERITANCE_USE_DERIVED = "ccls.inheritance.useDerived"
CMD_CLOSE_INHERITANCE_HIERARCHY = "ccls.closeInheritanceHierarchy"

DEFAULT_STATUS_UPDATE_INTERVAL_MS = 2000
