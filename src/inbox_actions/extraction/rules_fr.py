"""French rule set.

Request phrasings are the formal and informal second person ("peux-tu",
"pourriez-vous", "merci de", "veuillez") plus impersonal obligations
("il faut", "il faudrait") and imperatives.
"""

import regex

from inbox_actions.extraction.rules import (
    AMBIGUOUS_DATE,
    ISO_DATE,
    SENDER_EXCLUSIONS,
    ActionType,
    DatePattern,
    RuleSet,
    TriggerRule,
    alternation,
    compile_all,
)

_FLAGS = regex.IGNORECASE

FR_MONTHS = {
    "janvier": 1,
    "février": 2,
    "fevrier": 2,
    "mars": 3,
    "avril": 4,
    "mai": 5,
    "juin": 6,
    "juillet": 7,
    "août": 8,
    "aout": 8,
    "septembre": 9,
    "octobre": 10,
    "novembre": 11,
    "décembre": 12,
    "decembre": 12,
}

FR_WEEKDAYS = {
    "lundi": 0,
    "mardi": 1,
    "mercredi": 2,
    "jeudi": 3,
    "vendredi": 4,
    "samedi": 5,
    "dimanche": 6,
}

_FR_MONTH = alternation(FR_MONTHS)
_FR_WEEKDAY = alternation(FR_WEEKDAYS)

_FR_ASK = r"(?:peux-tu|pourrais-tu|pourriez-vous|pouvez-vous|merci\s+de|veuillez)\s+"
_FR_MUST = r"il\s+(?:faut|faudrait)\s+(?:aussi\s+)?"
_FR_LEAD = r"(?:" + _FR_ASK + r"|" + _FR_MUST + r")"
_FR_END = r"(?=\s*(?:[,;:?!.)]|$)|\s+(?:avant|d'ici|pour)\b)"
_FR_END_ON = r"(?=\s*(?:[,;:?!.)]|$)|\s+(?:avant|d'ici|pour|sur)\b)"


def _fr(body: str, verb: str, fallback: str) -> TriggerRule:
    return TriggerRule(regex.compile(body, _FLAGS), verb, fallback)


FR_TRIGGERS: dict[ActionType, tuple[TriggerRule, ...]] = {
    "SEND": (
        _fr(
            _FR_LEAD + r"(?:m')?envoyer\s+(?P<object>.{1,100}?)" + _FR_END,
            "Envoyer",
            "Envoyer un document",
        ),
        _fr(
            r"\b(?:envoie|envoyez)(?:-moi|-nous)?\s+(?P<object>.{1,100}?)" + _FR_END,
            "Envoyer",
            "Envoyer un document",
        ),
        _fr(
            _FR_LEAD + r"(?:m'|me\s+|nous\s+)?(?:transmettre|faire\s+parvenir|adresser)\s+"
            r"(?P<object>.{1,100}?)" + _FR_END,
            "Envoyer",
            "Envoyer un document",
        ),
        _fr(
            _FR_ASK + r"(?:me\s+)?(?:transférer|transferer|faire\s+suivre)\s+"
            r"(?P<object>.{1,100}?)" + _FR_END,
            "Envoyer",
            "Envoyer un document",
        ),
    ),
    "CALL": (
        _fr(
            _FR_LEAD + r"(?:me\s+|nous\s+)?rappeler(?:\s+(?P<object>.{1,50}?))?" + _FR_END,
            "Appeler",
            "Appeler",
        ),
        _fr(
            r"\b(?:rappelle|rappelez)(?:-moi|-nous)?(?:\s+(?P<object>.{1,50}?))?" + _FR_END,
            "Appeler",
            "Appeler",
        ),
        _fr(
            _FR_LEAD + r"(?:appeler|contacter|joindre)\s+(?P<object>.{1,50}?)" + _FR_END,
            "Appeler",
            "Appeler",
        ),
        _fr(
            r"\b(?:appelle|appelez|contacte|contactez)\s+(?P<object>.{1,50}?)" + _FR_END,
            "Appeler",
            "Appeler",
        ),
        _fr(
            _FR_ASK + r"(?:organiser|planifier)\s+(?:une?\s+)?(?:visio|réunion|reunion|call)"
            r"(?:\s+avec)?\s+(?P<object>.{1,50}?)" + _FR_END,
            "Organiser une visio avec",
            "Organiser une visio",
        ),
    ),
    "FOLLOW_UP": (
        _fr(
            _FR_LEAD + r"relancer\s+(?P<object>.{1,50}?)" + _FR_END_ON,
            "Relancer",
            "Faire un suivi",
        ),
        _fr(
            r"\b(?:relance|relancez)\s+(?P<object>.{1,50}?)" + _FR_END_ON,
            "Relancer",
            "Faire un suivi",
        ),
        _fr(
            _FR_ASK + r"faire\s+(?:un\s+)?(?:suivi|point)\s+(?:sur|avec|de)\s+"
            r"(?P<object>.{1,50}?)" + _FR_END,
            "Faire un suivi sur",
            "Faire un suivi",
        ),
        _fr(
            _FR_ASK + r"(?:me\s+)?(?:faire\s+un\s+)?rappel\s+(?:pour|sur|de)\s+"
            r"(?P<object>.{1,50}?)(?=\s*(?:[,;:?!.)]|$)|\s+avant\b)",
            "Faire un suivi sur",
            "Faire un suivi",
        ),
    ),
    "PAY": (
        _fr(
            _FR_ASK + r"(?:régler|regler|payer)\s+(?:la\s+)?facture(?:\s+(?P<object>.{1,30}?))?"
            r"(?=\s*(?:[,;:?!.)]|$)|\s+(?:avant|d'ici)\b)",
            "Payer la facture",
            "Payer la facture",
        ),
        _fr(
            _FR_LEAD + r"(?:régler|regler|payer)\s+(?P<object>.{1,50}?)"
            r"(?=\s*(?:[,;:?!.)]|$)|\s+(?:avant|d'ici)\b)",
            "Payer",
            "Effectuer un paiement",
        ),
        _fr(
            r"\b(?:règle|réglez|reglez|paie|payez)\s+(?P<object>.{1,50}?)"
            r"(?=\s*(?:[,;:?!.)]|$)|\s+(?:avant|d'ici)\b)",
            "Payer",
            "Effectuer un paiement",
        ),
        _fr(
            _FR_ASK + r"procéder\s+au\s+(?:paiement|règlement)(?:\s+(?P<object>.{1,50}?))?"
            r"(?=\s*(?:[,;:?!.)]|$)|\s+(?:avant|d'ici)\b)",
            "Payer",
            "Effectuer un paiement",
        ),
        _fr(
            _FR_ASK + r"faire\s+(?:un\s+)?virement\s+(?:de|pour)\s+(?P<object>.{1,50}?)"
            r"(?=\s*(?:[,;:?!.)]|$)|\s+avant\b)",
            "Payer",
            "Effectuer un paiement",
        ),
    ),
    "VALIDATE": (
        _fr(
            _FR_LEAD + r"valider\s+(?P<object>.{1,50}?)"
            r"(?=\s*(?:[,;:?!.)]|$)|\s+(?:avant|d'ici)\b)",
            "Valider",
            "Valider",
        ),
        _fr(
            r"\b(?:valide|validez)\s+(?P<object>.{1,50}?)"
            r"(?=\s*(?:[,;:?!.)]|$)|\s+(?:avant|d'ici)\b)",
            "Valider",
            "Valider",
        ),
        _fr(
            _FR_ASK + r"(?:approuver|confirmer)\s+(?P<object>.{1,50}?)"
            r"(?=\s*(?:[,;:?!.)]|$)|\s+(?:avant|d'ici)\b)",
            "Valider",
            "Valider",
        ),
        _fr(
            r"\b(?:approuve|approuvez|confirme|confirmez)\s+(?P<object>.{1,50}?)"
            r"(?=\s*(?:[,;:?!.)]|$)|\s+(?:avant|d'ici)\b)",
            "Valider",
            "Valider",
        ),
        _fr(
            _FR_ASK + r"(?:me\s+)?(?:donner\s+(?:ton|votre)\s+)?(?:avis|ok|accord|validation)\s+"
            r"(?:sur|pour)\s+(?P<object>.{1,50}?)(?=\s*(?:[,;:?!.)]|$)|\s+avant\b)",
            "Valider",
            "Valider",
        ),
    ),
}

FR_CONDITIONAL_MARKERS = compile_all(
    r"^\s*si\b",
    r"\béventuellement\b",
    r"\bsi\s+jamais\b",
    r"\b(?:quand|lorsque)\s+(?:tu|vous)\s+(?:auras|as|aurez|avez)\s+(?:le\s+|du\s+)?temps\b",
    r"\bsi\s+(?:tu\s+as|vous\s+avez)\s+(?:le\s+|du\s+)?temps\b",
    r"\bsi\s+(?:tu\s+peux|vous\s+pouvez)\b",
    r"\bsi\s+possible\b",
    r"\bpeut-être\b",
    r"\b(?:pas|rien\s+d')\s*urgent\b",
)

FR_STRONG_MARKERS: dict[ActionType, tuple[regex.Pattern, ...]] = {
    "SEND": compile_all(
        r"devis",
        r"contrat",
        r"document",
        r"pi[eè]ce\s+jointe",
        r"fichier",
        r"pdf",
        r"rapport",
    ),
    "CALL": compile_all(
        r"\b\d{2}\s?\d{2}\s?\d{2}\s?\d{2}\s?\d{2}\b",
        r"visi?o",
        r"\bmeet\b",
        r"\bteams\b",
        r"\bzoom\b",
        r"rappeler",
    ),
    "FOLLOW_UP": compile_all(
        r"client",
        r"devis",
        r"facture",
        r"dossier",
        r"commande",
        r"relancer",
        r"suivi",
    ),
    "PAY": compile_all(
        r"facture",
        r"\bfa[-\s]?\d+",
        r"r[eéè]glement",
        r"virement",
        r"iban",
        r"tva",
    ),
    "VALIDATE": compile_all(
        r"contrat",
        r"devis",
        r"version",
        r"document",
        r"maquette",
        r"proposition",
        r"bon\s+pour\s+accord",
    ),
}

FR_SUBJECT_EXCLUSIONS = compile_all(
    r"newsletter",
    r"unsubscribe",
    r"désabonnement",
    r"notification",
    r"confirmation\s+(?:de\s+)?(?:commande|inscription|réservation)",
    r"votre\s+commande",
    r"facture\s+automatique",
    r"re(?:çu|cu)\s+(?:de\s+)?paiement",
)

FR_BODY_EXCLUSIONS = compile_all(
    r"cliquez\s+ici\s+pour\s+vous\s+désabonner",
    r"si\s+vous\s+ne\s+souhaitez\s+plus\s+recevoir",
    r"pour\s+vous\s+désinscrire",
    r"cet\s+e-?mail\s+a\s+été\s+envoyé\s+automatiquement",
    r"ne\s+pas\s+répondre\s+à\s+cet\s+e-?mail",
)

_FR_BY = r"(?:avant|pour|d'ici)\s+"

FR_DATE_PATTERNS: tuple[DatePattern, ...] = (
    AMBIGUOUS_DATE,
    ISO_DATE,
    DatePattern(
        regex.compile(_FR_BY + r"(?:le\s+)?(\d{1,2})(?:er)?\s+(" + _FR_MONTH + r")\b", _FLAGS),
        "day_month",
    ),
    DatePattern(regex.compile(r"\bdemain\s+matin\b", _FLAGS), "tomorrow_morning"),
    DatePattern(regex.compile(_FR_BY + r"(" + _FR_WEEKDAY + r")\b", _FLAGS), "weekday"),
    DatePattern(regex.compile(r"(?:d'ici|dans)\s+(\d{1,3})\s+jours?\b", _FLAGS), "days"),
    DatePattern(regex.compile(r"(?:d'ici|dans)\s+(\d{1,2})\s+semaines?\b", _FLAGS), "weeks"),
    DatePattern(regex.compile(r"\b(?:avant|pour)\s+midi\b", _FLAGS), "before_noon"),
    DatePattern(regex.compile(r"\bce\s+matin\b", _FLAGS), "this_morning"),
    DatePattern(regex.compile(r"\bcet?\s+après[-\s]midi\b", _FLAGS), "this_afternoon"),
    DatePattern(regex.compile(r"\bce\s+soir\b", _FLAGS), "this_evening"),
    DatePattern(
        regex.compile(r"\b(?:en\s+)?fin\s+de\s+(?:la\s+)?journée\b", _FLAGS), "end_of_day"
    ),
    DatePattern(regex.compile(r"(?:\baujourd'hui\b|\bce\s+jour\b)", _FLAGS), "today"),
    DatePattern(regex.compile(r"\bdemain\b", _FLAGS), "tomorrow"),
    DatePattern(regex.compile(r"\bcette\s+semaine\b", _FLAGS), "this_week"),
    DatePattern(regex.compile(r"\bla\s+semaine\s+prochaine\b", _FLAGS), "next_week"),
    DatePattern(regex.compile(r"\bfin\s+de\s+(?:la\s+)?semaine\b", _FLAGS), "end_of_week"),
    DatePattern(regex.compile(r"\bce\s+mois(?:-ci)?\b", _FLAGS), "this_month"),
    DatePattern(regex.compile(r"\bfin\s+(?:du\s+)?mois\b", _FLAGS), "end_of_month"),
)

FR_RULES = RuleSet(
    locale="fr",
    triggers=FR_TRIGGERS,
    conditional_markers=FR_CONDITIONAL_MARKERS,
    strong_markers=FR_STRONG_MARKERS,
    sender_exclusions=SENDER_EXCLUSIONS,
    subject_exclusions=FR_SUBJECT_EXCLUSIONS,
    body_exclusions=FR_BODY_EXCLUSIONS,
    date_patterns=FR_DATE_PATTERNS,
    month_names=FR_MONTHS,
    weekday_names=FR_WEEKDAYS,
    object_suffix=regex.compile(r"(?:\s+s'il\s+(?:te|vous)\s+pla[iî]t|\s+stp|\s+svp)+$", _FLAGS),
    vague_objects=frozenset({"ça", "ca", "cela", "le", "la", "les", "moi", "nous", "lui"}),
)
