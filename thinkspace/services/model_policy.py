from typing import Iterable, List, Optional

from thinkspace.config import get_settings


class CuratedModelPolicy:
    """Models a user may pick without bringing their own key."""

    def __init__(self, curated: Optional[Iterable[str]] = None):
        models = get_settings().curated_models_list if curated is None else curated
        self._curated: List[str] = [m.strip() for m in models if m and m.strip()]

    @property
    def curated_models(self) -> List[str]:
        return list(self._curated)

    @property
    def default_model(self) -> str:
        return self._curated[0] if self._curated else ""

    def is_allowed(self, model: str) -> bool:
        return model.strip() in self._curated
