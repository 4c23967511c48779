"""Document type classifier.

Single-shot, stateless classification of a whole document into the closed
``DocumentType`` enumeration from three kinds of signal:

1. Keywords of the detected language, weighted by specificity (length)
   with diminishing returns for repeats.
2. Structural regexes (invoice totals, salutations, clause numbering, ...),
   0.15 each.
3. Position boosts for typical openings in the first five lines and
   closings in the last five.

``confidence = min(best_score / 3, 1)``; below ``min_confidence`` (0.25)
the type falls back to ``unknown``.  Only signal names reach
``DocumentClassification.features``, never document text.
"""
from __future__ import annotations

import logging
import math
import re
from collections import Counter

from anonymizer.classification.rule_engine import applicable_rule_names
from anonymizer.pii.entities import DocumentClassification, DocumentType

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE: float = 0.25
MAX_SCORE: float = 3.0
STRUCTURE_WEIGHT: float = 0.15
MAX_FEATURES: int = 10

KEYWORDS: dict[DocumentType, dict[str, tuple[str, ...]]] = {
    DocumentType.INVOICE: {
        "en": ("invoice", "bill", "payment due", "amount due", "subtotal", "total", "vat", "qty",
               "quantity", "unit price", "invoice number", "invoice date", "due date", "payment terms"),
        "fr": ("facture", "montant", "total", "tva", "quantité", "prix unitaire", "numéro de facture",
               "date de facture", "échéance", "net à payer", "ttc"),
        "de": ("rechnung", "rechnungsnummer", "betrag", "mwst", "mehrwertsteuer", "gesamtbetrag", "menge",
               "einzelpreis", "rechnungsdatum", "zahlbar", "fällig", "netto", "brutto"),
        "it": ("fattura", "importo", "totale", "iva", "quantità", "prezzo unitario", "numero fattura",
               "data fattura", "scadenza"),
    },
    DocumentType.LETTER: {
        "en": ("dear", "sincerely", "regards", "yours truly", "yours faithfully", "kind regards",
               "to whom it may concern", "enclosed", "please find", "i am writing", "subject:"),
        "fr": ("cher", "chère", "madame", "monsieur", "cordialement", "salutations", "veuillez agréer",
               "je vous prie", "meilleures salutations", "ci-joint", "objet:", "concerne:"),
        "de": ("sehr geehrte", "sehr geehrter", "liebe", "lieber", "mit freundlichen grüßen",
               "mit freundlichen grüssen", "hochachtungsvoll", "freundliche grüsse", "anbei", "betreff:"),
        "it": ("gentile", "egregio", "caro", "cara", "cordiali saluti", "distinti saluti",
               "in allegato", "le scrivo", "oggetto:"),
    },
    DocumentType.CONTRACT: {
        "en": ("agreement", "contract", "parties", "whereas", "hereby", "clause", "terms and conditions",
               "effective date", "termination", "obligations", "governing law", "jurisdiction"),
        "fr": ("contrat", "accord", "parties", "attendu que", "par les présentes", "ci-après", "clause",
               "conditions générales", "résiliation", "obligations", "for juridique", "droit applicable"),
        "de": ("vertrag", "vereinbarung", "parteien", "vertragsparteien", "hiermit", "klausel",
               "allgemeine geschäftsbedingungen", "inkrafttreten", "kündigung", "pflichten",
               "anwendbares recht", "gerichtsstand"),
        "it": ("contratto", "accordo", "parti", "premesso", "con la presente", "clausola",
               "condizioni generali", "risoluzione", "obblighi", "legge applicabile", "foro competente"),
    },
    DocumentType.REPORT: {
        "en": ("executive summary", "introduction", "conclusion", "findings", "recommendations",
               "methodology", "results", "appendix", "table of contents", "abstract", "key findings"),
        "fr": ("résumé", "introduction", "conclusion", "résultats", "recommandations", "méthodologie",
               "annexe", "table des matières", "sommaire", "objectifs"),
        "de": ("zusammenfassung", "einleitung", "fazit", "ergebnisse", "empfehlungen", "methodik",
               "anhang", "inhaltsverzeichnis", "überblick", "kernaussagen"),
        "it": ("sommario", "introduzione", "conclusione", "risultati", "raccomandazioni", "metodologia",
               "allegato", "indice", "panoramica", "obiettivi"),
    },
    DocumentType.MEDICAL: {
        "en": ("patient", "diagnosis", "treatment", "medication", "prescription", "hospital",
               "symptoms", "medical history", "physician", "discharge"),
        "fr": ("patient", "patiente", "diagnostic", "traitement", "médicament", "ordonnance",
               "hôpital", "symptômes", "antécédents", "médecin"),
        "de": ("patient", "patientin", "diagnose", "behandlung", "medikament", "rezept", "spital",
               "krankenhaus", "symptome", "anamnese", "arztbericht", "austrittsbericht"),
        "it": ("paziente", "diagnosi", "trattamento", "farmaco", "ricetta", "ospedale", "sintomi",
               "anamnesi", "medico curante"),
    },
    DocumentType.LEGAL: {
        "en": ("court", "plaintiff", "defendant", "judgment", "ruling", "appeal", "case number",
               "attorney", "hearing", "verdict"),
        "fr": ("tribunal", "demandeur", "défendeur", "jugement", "arrêt", "recours", "avocat",
               "audience", "numéro de dossier"),
        "de": ("gericht", "kläger", "klägerin", "beklagte", "beklagter", "urteil", "beschwerde",
               "rechtsanwalt", "verhandlung", "aktenzeichen", "geschäftsnummer"),
        "it": ("tribunale", "attore", "convenuto", "sentenza", "ricorso", "avvocato", "udienza",
               "numero di causa"),
    },
    DocumentType.CORRESPONDENCE: {
        "en": ("from:", "to:", "cc:", "sent:", "forwarded message", "reply", "our ref", "your ref"),
        "fr": ("de:", "à:", "envoyé:", "message transféré", "notre référence", "votre référence"),
        "de": ("von:", "an:", "gesendet:", "weitergeleitete nachricht", "unser zeichen", "ihr zeichen"),
        "it": ("da:", "a:", "inviato:", "messaggio inoltrato", "nostro riferimento", "vostro riferimento"),
    },
    DocumentType.FORM: {
        "en": ("please fill", "please complete", "checkbox", "select one", "date of birth",
               "sign here", "required field", "yes/no", "not applicable"),
        "fr": ("veuillez remplir", "cochez", "case à cocher", "date de naissance", "champ obligatoire",
               "facultatif", "oui/non", "non applicable"),
        "de": ("bitte ausfüllen", "ankreuzen", "geburtsdatum", "unterschrift", "pflichtfeld",
               "ja/nein", "nicht zutreffend"),
        "it": ("compilare", "casella", "data di nascita", "firma", "obbligatorio", "facoltativo", "sì/no"),
    },
}

STRUCTURAL_PATTERNS: dict[DocumentType, tuple[re.Pattern[str], ...]] = {
    DocumentType.INVOICE: (
        re.compile(r"(?:invoice|rechnung|facture|fattura)\s*(?:no\.?|nr\.?|n°|#|:)\s*[\w-]+", re.I),
        re.compile(r"(?:total|montant|betrag|totale)\s*[:=]?\s*(?:chf|eur|€)?\s*[\d',.]+", re.I),
        re.compile(r"(?:qty|menge|quantité|quantità)\s+(?:unit|preis|prix|prezzo)", re.I),
        re.compile(r"(?:chf|eur)\s*[\d',.]+\d", re.I),
        re.compile(r"\d+[.,]\d{2}\s*(?:chf|eur|€)", re.I),
    ),
    DocumentType.LETTER: (
        re.compile(r"^(?:dear|sehr geehrte[r]?|liebe[r]?|cher|chère|madame|monsieur|gentile|egregio)\b", re.I | re.M),
        re.compile(r"(?:sincerely|regards|cordialement|grüßen|grüssen|grüsse|salutations|saluti)\s*,?\s*$", re.I | re.M),
        re.compile(r"^(?:re|betreff|objet|oggetto|subject)\s*:", re.I | re.M),
        re.compile(r"(?:enclosed|anbei|ci-joint|in allegato)", re.I),
    ),
    DocumentType.CONTRACT: (
        re.compile(r"(?:between|entre|zwischen|tra)\s+(?:the\s+)?(?:parties|parteien|les parties|le parti)", re.I),
        re.compile(r"(?:article|art\.|clause|section|artikel|articolo)\s+\d+", re.I),
        re.compile(r"(?:whereas|attendu que|in anbetracht|premesso che)", re.I),
        re.compile(r"(?:hereby|par les présentes|hiermit|con la presente)\s+\w+", re.I),
    ),
    DocumentType.REPORT: (
        re.compile(r"(?:table\s+of\s+contents|inhaltsverzeichnis|table\s+des\s+matières|indice)", re.I),
        re.compile(r"(?:executive\s+summary|zusammenfassung|résumé|sommario)", re.I),
        re.compile(r"^\d+(?:\.|\))\s+(?:introduction|einleitung|introduzione|methodology|methodik|results|ergebnisse|conclusion)", re.I | re.M),
        re.compile(r"(?:figure|table|abbildung|tabelle|tableau|figura)\s+\d+", re.I),
    ),
    DocumentType.MEDICAL: (
        re.compile(r"(?:patient(?:in|e)?|paziente)\s*(?:id|nr\.?|no\.?|n°)?\s*:", re.I),
        re.compile(r"(?:diagnos(?:e|is|tic|i))\s*:", re.I),
        re.compile(r"\b\d+\s*(?:mg|ml|µg|mcg)\b", re.I),
        re.compile(r"\bICD-?10\b", re.I),
    ),
    DocumentType.LEGAL: (
        re.compile(r"(?:aktenzeichen|geschäftsnummer|case\s+no\.?|dossier\s+n°|n°\s+de\s+dossier)\s*:?\s*[\w./-]+", re.I),
        re.compile(r"^(?:kläger(?:in)?|beklagte[r]?|plaintiff|defendant|demandeur|défendeur|ricorrente)\s*:", re.I | re.M),
        re.compile(r"\b(?:Art\.|§)\s*\d+\s*(?:Abs\.|al\.|cpv|ZPO|OR|ZGB|CO|CC)\b", re.I),
    ),
    DocumentType.CORRESPONDENCE: (
        re.compile(r"^(?:from|von|de|da)\s*:\s*\S+", re.I | re.M),
        re.compile(r"^(?:to|an|à|a)\s*:\s*\S+", re.I | re.M),
        re.compile(r"^(?:sent|gesendet|envoyé|inviato|date|datum)\s*:\s*\S+", re.I | re.M),
        re.compile(r"^(?:cc|bcc)\s*:", re.I | re.M),
    ),
    DocumentType.FORM: (
        re.compile(r"\[\s*\]|\(\s*\)|□|☐|☑|☒"),
        re.compile(r"(?:name|nom|nome|vorname|prénom):\s*_{2,}|_{5,}", re.I),
        re.compile(r"(?:yes|no|oui|non|ja|nein|sì)\s*(?:\[\s*\]|\(\s*\)|□|☐)", re.I),
        re.compile(r"\*\s*(?:required|obligatoire|pflichtfeld|obbligatorio)", re.I),
    ),
}

# (document type, feature name, weight, regex) over the first / last five lines.
_OPENING_BOOSTS: tuple[tuple[DocumentType, str, float, re.Pattern[str]], ...] = (
    (DocumentType.INVOICE, "position:invoice_header", 0.2, re.compile(r"invoice|rechnung|facture|fattura", re.I)),
    (DocumentType.LETTER, "position:salutation_start", 0.2,
     re.compile(r"dear|sehr geehrte|liebe[r]?\b|cher|chère|madame|monsieur|gentile|egregio", re.I)),
    (DocumentType.CONTRACT, "position:parties_clause", 0.2,
     re.compile(r"between|entre|zwischen|parties|parteien|contrat|vertrag|contratto", re.I)),
    (DocumentType.REPORT, "position:toc_header", 0.25,
     re.compile(r"table of contents|inhaltsverzeichnis|table des matières", re.I)),
    (DocumentType.MEDICAL, "position:medical_header", 0.2,
     re.compile(r"arztbericht|austrittsbericht|medical report|rapport médical|referto", re.I)),
    (DocumentType.CORRESPONDENCE, "position:mail_header", 0.2,
     re.compile(r"^(?:from|von|de|da)\s*:", re.I | re.M)),
)
_CLOSING_BOOSTS: tuple[tuple[DocumentType, str, float, re.Pattern[str]], ...] = (
    (DocumentType.LETTER, "position:signature_end", 0.15,
     re.compile(r"sincerely|regards|grüß|grüss|cordialement|salutations|saluti", re.I)),
)

LANGUAGE_STOP_WORDS: dict[str, frozenset[str]] = {
    "en": frozenset({"the", "and", "is", "are", "was", "were", "have", "has", "this", "that",
                     "with", "for", "your", "please"}),
    "fr": frozenset({"le", "la", "les", "de", "du", "des", "et", "est", "sont", "vous", "nous",
                     "dans", "pour", "avec", "cette", "votre"}),
    "de": frozenset({"der", "die", "das", "und", "ist", "sind", "ihr", "ihre", "wir", "mit",
                     "für", "von", "bei", "nach", "bitte"}),
    "it": frozenset({"il", "la", "le", "di", "del", "della", "e", "è", "sono", "con", "per",
                     "nella", "questo", "questa"}),
}

_WORD_RE = re.compile(r"[a-zà-öø-ÿ]+")


def _keyword_regex(keyword: str) -> re.Pattern[str]:
    return re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)")


_KEYWORD_RES: dict[DocumentType, dict[str, tuple[tuple[str, re.Pattern[str]], ...]]] = {
    doc_type: {
        language: tuple((kw, _keyword_regex(kw)) for kw in keywords)
        for language, keywords in by_language.items()
    }
    for doc_type, by_language in KEYWORDS.items()
}


def keyword_weight(keyword: str, match_count: int) -> float:
    """Longer keywords are more specific; repeats add with diminishing returns."""
    length_factor = min(len(keyword) / 8, 1.5)
    count_factor = 1 + math.log2(match_count + 1) * 0.5
    return 0.08 * length_factor * count_factor


def detect_language(text: str) -> str:
    """Return en/de/fr/it by stop-word frequency, or ``unknown``."""
    counts = Counter(_WORD_RE.findall(text.lower()))
    scores = {
        language: sum(counts[word] for word in words)
        for language, words in LANGUAGE_STOP_WORDS.items()
    }
    best = max(scores, key=lambda language: scores[language])
    return best if scores[best] > 0 else "unknown"


class DocumentClassifier:
    """Stateless; one instance may be shared across runs."""

    def __init__(self, min_confidence: float = DEFAULT_MIN_CONFIDENCE) -> None:
        self.min_confidence = min_confidence

    def classify(self, text: str, language_hint: str | None = None) -> DocumentClassification:
        """Classify *text*.

        Parameters
        ----------
        text:
            Full document text.  Never logged.
        language_hint:
            Skip language detection when the caller already knows it.

        Returns
        -------
        DocumentClassification
            ``unknown`` with the computed confidence when no type reaches
            ``min_confidence``.
        """
        lowered = text.lower()
        language = language_hint if language_hint in LANGUAGE_STOP_WORDS else detect_language(text)
        scores: dict[DocumentType, float] = {doc_type: 0.0 for doc_type in KEYWORDS}
        features: list[tuple[str, float]] = []

        for doc_type, by_language in _KEYWORD_RES.items():
            languages = [language] if language in by_language else list(by_language)
            for lang in languages:
                for keyword, regex in by_language[lang]:
                    count = len(regex.findall(lowered))
                    if not count:
                        continue
                    weight = keyword_weight(keyword, count)
                    scores[doc_type] += weight
                    features.append((f"keyword:{doc_type}:{keyword}", weight))

        for doc_type, patterns in STRUCTURAL_PATTERNS.items():
            for index, pattern in enumerate(patterns):
                if pattern.search(text):
                    scores[doc_type] += STRUCTURE_WEIGHT
                    features.append((f"pattern:{doc_type}:{index}", STRUCTURE_WEIGHT))

        lines = text.split("\n")
        first_lines = "\n".join(lines[:5])
        last_lines = "\n".join(lines[-5:])
        for doc_type, name, weight, pattern in _OPENING_BOOSTS:
            if pattern.search(first_lines):
                scores[doc_type] += weight
                features.append((name, weight))
        for doc_type, name, weight, pattern in _CLOSING_BOOSTS:
            if pattern.search(last_lines):
                scores[doc_type] += weight
                features.append((name, weight))

        # Ties resolve by declaration order of KEYWORDS.
        best_type = max(scores, key=lambda doc_type: scores[doc_type])
        confidence = min(scores[best_type] / MAX_SCORE, 1.0)
        final_type = best_type if confidence >= self.min_confidence else DocumentType.UNKNOWN

        features.sort(key=lambda item: -item[1])
        logger.debug(
            "classifier: type=%s confidence=%.3f language=%s features=%d",
            final_type,
            confidence,
            language,
            len(features),
        )
        return DocumentClassification(
            type=final_type,
            confidence=confidence,
            language=language,
            features=tuple(name for name, _ in features[:MAX_FEATURES]),
        )

    def is_type(self, text: str, doc_type: DocumentType, min_confidence: float = 0.5) -> bool:
        result = self.classify(text)
        return result.type == doc_type and result.confidence >= min_confidence

    def get_applicable_rules(self, doc_type: DocumentType) -> list[str]:
        """Names of the extraction rules the rule engine runs for *doc_type*."""
        return applicable_rule_names(doc_type)
