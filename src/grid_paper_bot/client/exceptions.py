"""カスタム例外クラス."""


class PriceUnavailable(Exception):
    """価格を取得できない（全プロバイダー失敗、タイムアウト、不正な価格）."""


class ProviderError(PriceUnavailable):
    """単一プロバイダーの取得失敗."""
