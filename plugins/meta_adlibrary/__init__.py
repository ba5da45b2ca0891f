"""Meta Ad Library plugin package – page source for ``ads_archive``.

The public interface that *pipeline_orchestrator* discovers is
:class:`AdLibraryFetcher`; YAML references it as::

```yaml
source:
  class: "meta_adlibrary.AdLibraryFetcher"
  kwargs: { access_token: "${META_ACCESS_TOKEN}", search_terms: "climate" }
```
"""

from .fetcher import AdLibraryFetcher   # noqa: F401
