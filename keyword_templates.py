import re
import logging
from typing import Iterable, List, Optional


KEYWORD_PATTERN = re.compile(r"\{keyword\}", re.IGNORECASE)
LOCATION_PATTERN = re.compile(r"\{location\}", re.IGNORECASE)
BRAND_PATTERN = re.compile(r"\{brand\}", re.IGNORECASE)


def expand_template(
    template: str,
    keyword: str,
    location: Optional[str],
    brand: Optional[str],
) -> str:
    """
    Fill the {keyword}, {location} and {brand} placeholders of a template.

    Placeholders match case-insensitively and the location is lower-cased.
    Anything that is not one of the three placeholders stays literal text.
    """
    # Callables keep backslashes in the values from being read as group refs
    text = KEYWORD_PATTERN.sub(lambda _: str(keyword or ""), str(template or ""))
    text = LOCATION_PATTERN.sub(lambda _: (location or "").lower(), text)
    return BRAND_PATTERN.sub(lambda _: str(brand or ""), text)


def expand_keywords(
    keywords: Iterable[str],
    templates: Iterable[str],
    location: Optional[str],
    brand: Optional[str],
) -> List[str]:
    """Expand every keyword against every template, template-major."""
    keyword_list = [kw for kw in keywords if isinstance(kw, str)]
    template_list = [tpl for tpl in templates if isinstance(tpl, str)]
    queries: List[str] = []
    for template in template_list:
        for keyword in keyword_list:
            queries.append(expand_template(template, keyword, location, brand))
    logging.debug(
        "Expanded %d keywords x %d templates into %d queries for %s",
        len(keyword_list),
        len(template_list),
        len(queries),
        location or "unknown location",
    )
    return queries
