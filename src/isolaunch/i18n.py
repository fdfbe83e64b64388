# In isolaunch/i18n.py - gettext translator shared by the CLI and the child bootstrap

import gettext
from importlib import resources

# --- Step 1: Language mapping ---
LANGUAGE_CODE_MAP = {
    "de": "German",
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "it": "Italian",
    "ja": "Japanese",
    "ko": "Korean",
    "nl": "Dutch",
    "pl": "Polish",
    "pt": "Portuguese",
    "ru": "Russian",
    "sv": "Swedish",
    "tr": "Turkish",
    "zh": "Chinese",
    # Specific variants
    "pt_BR": "Brazilian Portuguese",
    "pt-BR": "Brazilian Portuguese",
    "zh_CN": "Chinese (Simplified)",
    "zh-CN": "Chinese (Simplified, China)",
}

AVAILABLE_LANGUAGES = {
    "en": {"name": "English", "native": "English"},
    "de": {"name": "German", "native": "Deutsch"},
    "es": {"name": "Spanish", "native": "Español"},
    "fr": {"name": "French", "native": "Français"},
    "ja": {"name": "Japanese", "native": "日本語"},
    "zh_CN": {"name": "Chinese (Simplified)", "native": "中文 (简体)"},
}

LANG_INFO = AVAILABLE_LANGUAGES

SUPPORTED_LANGUAGES = {code: data["native"] for code, data in LANG_INFO.items()}


# --- Step 2: Callable translator so `_` survives star-imports from other libraries ---
class Translator:
    """
    A callable class that holds the global translation function.
    This structure avoids namespace collisions with libraries that also export `_`.
    """

    def __init__(self):
        self._translator = lambda s: s
        self.current_lang = "en"
        self.set_language()

    def set_language(self, lang_code=None):
        try:
            localedir = str(resources.files("isolaunch") / "locale")

            if lang_code is None:
                import locale

                lang_env = locale.getlocale()[0] or "en_US"
                lang_code = lang_env.split(".")[0]

            # Normalize language codes (handle both underscore and hyphen variants)
            if lang_code in LANGUAGE_CODE_MAP:
                normalized_code = lang_code
            elif lang_code.replace("-", "_") in LANGUAGE_CODE_MAP:
                normalized_code = lang_code.replace("-", "_")
            else:
                normalized_code = lang_code

            langs_to_try = [normalized_code]
            if "_" in normalized_code:
                langs_to_try.append(normalized_code.split("_")[0])
            elif "-" in normalized_code:
                langs_to_try.append(normalized_code.split("-")[0])
            langs_to_try.append("en")

            translation = gettext.translation(
                "isolaunch", localedir=localedir, languages=langs_to_try, fallback=True
            )
            self._translator = translation.gettext
            self.current_lang = translation.info().get("language", "en")
        except Exception:
            self.current_lang = "en"
            self._translator = lambda s: s

    def __call__(self, text):
        return self._translator(text)

    def get_language_code(self):
        return self.current_lang

    def get_language_name(self, code=None):
        """Get the human-readable name of a language."""
        if code is None:
            code = self.current_lang
        return LANG_INFO.get(code, {}).get("name", LANGUAGE_CODE_MAP.get(code, code))

    def is_supported(self, code):
        """Check if a language code is supported."""
        return code in LANGUAGE_CODE_MAP or code in LANG_INFO


# --- Step 3: The global instance the rest of the package imports ---
_ = Translator()
