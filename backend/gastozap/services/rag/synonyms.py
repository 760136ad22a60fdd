"""Shared, read-only synonym vocabulary for category retrieval."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from gastozap.services.rag.tokens import tokenize

logger = logging.getLogger(__name__)

BUNDLED_VERSION = "2024.1"

# Colloquial term -> canonical category vocabulary. Relations are made
# symmetric on load, so each pair only needs to be listed once.
_BUNDLED: dict[str, list[str]] = {
    # food / groceries
    "supermercado": ["mercado", "compras", "alimentacao", "feira", "hortifruti", "supermarket", "groceries"],
    "supermarket": ["grocery", "groceries", "market", "food"],
    "feira": ["hortifruti", "frutas", "verduras", "legumes"],
    "hortifruti": ["frutas", "verduras", "legumes"],
    "padaria": ["pao", "paes", "cafe", "bakery"],
    "bakery": ["bread", "pastry"],
    "restaurante": ["comida", "refeicao", "jantar", "almoco", "bar", "restaurant"],
    "restaurant": ["dinner", "lunch", "meal", "diner"],
    "almoco": ["comida", "refeicao", "alimentacao"],
    "jantar": ["janta", "comida", "refeicao"],
    "lanche": ["salgado", "coxinha", "pastel", "sanduiche", "snack"],
    "marmita": ["marmitex", "quentinha", "comida"],
    "sorvete": ["sorveteria", "picole", "acai"],
    "ifood": ["delivery", "entrega", "pedido", "rappi"],
    "delivery": ["takeout", "takeaway"],
    "comida": ["alimentacao", "refeicao", "food"],
    "food": ["meal", "eating", "groceries"],
    # transport
    "combustivel": ["gasolina", "posto", "abastecimento", "etanol", "alcool", "diesel", "fuel"],
    "fuel": ["gas", "gasoline", "petrol", "diesel"],
    "abasteci": ["combustivel", "gasolina", "posto", "abastecer"],
    "uber": ["taxi", "corrida", "transporte", "mobilidade", "rideshare", "lyft"],
    "onibus": ["transporte", "passagem", "coletivo", "metro", "bus"],
    "pedagio": ["estrada", "rodovia", "toll"],
    "estacionamento": ["parking", "vaga"],
    "oficina": ["manutencao", "mecanico", "conserto", "carro", "mechanic"],
    "lavagem": ["lavar", "carro", "carwash"],
    "carro": ["veiculo", "automovel", "car"],
    "transport": ["transportation", "commute", "transit"],
    # housing / utilities
    "aluguel": ["locacao", "moradia", "rent"],
    "condominio": ["moradia", "predio"],
    "luz": ["energia", "eletricidade", "electricity"],
    "agua": ["saneamento", "water"],
    "internet": ["wifi", "banda", "provedor"],
    "celular": ["telefone", "recarga", "phone"],
    "moveis": ["cadeira", "mesa", "armario", "sofa", "estante", "mobilia", "furniture"],
    "reforma": ["construcao", "material", "obra", "renovation"],
    "utensilios": ["cozinha", "panela", "prato", "talher"],
    # health
    "farmacia": ["remedio", "medicamento", "drogaria", "saude", "pharmacy"],
    "pharmacy": ["medicine", "drugstore", "prescription"],
    "medico": ["consulta", "saude", "clinica", "doctor"],
    "academia": ["gym", "musculacao", "treino"],
    # education
    "educacao": ["escola", "escolar", "ensino", "faculdade", "curso", "education"],
    "education": ["school", "tuition", "course", "college"],
    "livro": ["livros", "leitura", "livraria", "book"],
    "caderno": ["material", "escolar", "papelaria"],
    # leisure / shopping
    "cinema": ["filme", "ingresso", "lazer", "movie"],
    "netflix": ["streaming", "assinatura", "spotify"],
    "roupa": ["vestuario", "camisa", "calca", "sapato", "clothes", "clothing"],
    "viagem": ["hotel", "passagem", "hospedagem", "turismo", "travel"],
    "eletronico": ["aparelho", "eletronicos", "gadget", "electronics"],
    "acessorio": ["cabo", "capinha", "fone", "carregador"],
    "presente": ["gift", "aniversario"],
    "pet": ["veterinario", "racao", "petshop"],
    # finance
    "cartao": ["credito", "debito", "fatura", "anuidade"],
    "fatura": ["cartao", "credito", "pagamento"],
    "emprestimo": ["financiamento", "credito", "divida", "loan"],
    "investimento": ["aplicacao", "investir", "reserva", "poupanca", "investment"],
    "imposto": ["tributo", "taxa", "ipva", "iptu", "tax"],
    "tarifa": ["bancaria", "banco", "taxa", "fee"],
    "juros": ["multa", "atraso", "mora", "interest"],
    # income
    "salario": ["pagamento", "holerite", "ordenado", "salary", "paycheck"],
    "salary": ["wage", "wages", "payroll"],
    "freelance": ["freela", "bico", "servico", "projeto"],
}


def _symmetric(pairs: Mapping[str, Iterable[str]]) -> dict[str, frozenset[str]]:
    graph: dict[str, set[str]] = {}
    for term, related in pairs.items():
        heads = tokenize(term)
        for head in heads:
            for raw in related:
                for tail in tokenize(raw):
                    if tail == head:
                        continue
                    graph.setdefault(head, set()).add(tail)
                    graph.setdefault(tail, set()).add(head)
    return {key: frozenset(value) for key, value in graph.items()}


class SynonymTable:
    """Immutable token -> related-tokens lookup.

    Built once and replaced wholesale; instances are never mutated.
    """

    def __init__(self, relations: Mapping[str, frozenset[str]], *, version: str) -> None:
        self._relations = MappingProxyType(dict(relations))
        self.version = version

    def __len__(self) -> int:
        return len(self._relations)

    def related(self, token: str) -> frozenset[str]:
        return self._relations.get(token, frozenset())

    def are_related(self, left: str, right: str) -> bool:
        return right in self._relations.get(left, ())

    @classmethod
    def build(cls, pairs: Mapping[str, Iterable[str]], *, version: str) -> "SynonymTable":
        return cls(_symmetric(pairs), version=version)

    @classmethod
    def bundled(cls) -> "SynonymTable":
        return cls.build(_BUNDLED, version=BUNDLED_VERSION)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "SynonymTable":
        """Bundled vocabulary, optionally extended by a JSON override file.

        The file holds ``{"version": "...", "synonyms": {"term": ["a", "b"]}}``.
        """
        if not path:
            return cls.bundled()

        data = json.loads(Path(path).read_text(encoding="utf-8"))
        extra = data.get("synonyms") or {}
        if not isinstance(extra, dict):
            raise ValueError("synonym override file must map terms to lists")
        merged: dict[str, list[str]] = {k: list(v) for k, v in _BUNDLED.items()}
        for term, related in extra.items():
            if isinstance(related, str):
                related = [related]
            merged.setdefault(term, []).extend(str(item) for item in related)
        version = str(data.get("version") or f"{BUNDLED_VERSION}+override")
        table = cls.build(merged, version=version)
        logger.info("Loaded synonym table %s from %s (%d terms)", version, path, len(table))
        return table
