def test_imports():
    import importlib
    import sys
    import os

    # Ensure `src/` is on sys.path so `doc_centralizer` imports during tests (src layout)
    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    src_path = os.path.join(project_root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)

    # pandas
    import pandas as pd

    assert getattr(pd, "__version__", None)

    # doc_centralizer modules
    for name in (
        "doc_centralizer.core.pipeline",
        "doc_centralizer.core.scraping",
        "doc_centralizer.core.scraping.prefect_tasks",
        "doc_centralizer.services.storage",
        "doc_centralizer.flows.centralize_flow",
    ):
        assert importlib.import_module(name) is not None
