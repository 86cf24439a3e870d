"""
Web-portal source package.

* :class:`WebPortalSource` - browser login, sub-application scraping and
  authenticated downloads
* :mod:`.scraping` - HTML link extraction, classification and file naming
"""

from .source import PortalState, WebPortalSource  # noqa: F401
