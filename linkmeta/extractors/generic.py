from linkmeta.extractors.base import Extractor


class GenericExtractor(Extractor):
    """Catch-all strategy: open-graph style title/description/image only, never an embed."""

    name = "generic"

    def matches(self, url: str) -> bool:
        return True
