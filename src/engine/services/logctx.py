def ctx_prefix(*, pipeline: str, step: str | None = None, run: str | None = None) -> str:
    base = f"pipeline={pipeline}"
    if step is not None:
        base = f"{base} step={step}"
    return f"{base} run={run}" if run is not None else base
