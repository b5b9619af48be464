"""Tests for the deterministic menu / field shortcuts."""
import pytest

from core.heuristics import detect_menu_message, detect_requested_field, select_menu_option
from models.schemas import AutomationField, MenuOption
from conftest import make_profile


class TestDetectMenu:
    @pytest.mark.parametrize("message", [
        "*1* - Segunda via\n*2* - Falta de água",
        "Escolha:\n1 - Segunda via\n2 - Falta de água",
        "1. Segunda via\n2. Falta de água",
        "1) Segunda via\n2) Falta de água",
        "[1] Segunda via [2] Falta de água",
    ])
    def test_numbered_menus(self, message):
        assert detect_menu_message(message)

    @pytest.mark.parametrize("message", [
        "",
        "Informe seu CPF:",
        "Sua conta de 2024 está paga.",
        "Protocolo 12345 registrado",
    ])
    def test_plain_text(self, message):
        assert not detect_menu_message(message)


class TestSelectMenuOption:
    def test_keyword_match(self):
        options = make_profile().menu_options
        assert select_menu_option("quero a fatura de março", options).value == "1"
        assert select_menu_option("estou sem água em casa", options).value == "2"

    def test_label_word_fallback(self):
        options = [
            MenuOption(value="3", label="Religação de energia", priority=0),
            MenuOption(value="4", label="Outros assuntos", priority=1),
        ]
        assert select_menu_option("pedir religação urgente", options).value == "3"

    def test_priority_order_breaks_ties(self):
        options = [
            MenuOption(value="b", label="B", keywords=["conta"], priority=2),
            MenuOption(value="a", label="A", keywords=["conta"], priority=1),
        ]
        assert select_menu_option("minha conta", options).value == "a"

    def test_exit_options_never_selected(self):
        options = [MenuOption(value="9", label="Encerrar", keywords=["encerrar"], is_exit=True)]
        assert select_menu_option("encerrar atendimento", options) is None

    def test_no_match(self):
        assert select_menu_option("horário de funcionamento", make_profile().menu_options) is None
        assert select_menu_option("", make_profile().menu_options) is None


class TestDetectRequestedField:
    def test_prompt_pattern(self):
        fields = make_profile().fields
        assert detect_requested_field("Por favor, informe seu CPF:", fields).name == "cpf"

    def test_label_and_name(self):
        fields = [AutomationField(name="matricula", label="Matrícula", value="998877")]
        assert detect_requested_field("Qual a sua matrícula?", fields).value == "998877"
        assert detect_requested_field("Digite a MATRICULA", fields).value == "998877"

    def test_first_by_priority(self):
        fields = [
            AutomationField(name="b", label="Número da conta", value="2", prompt_patterns=["conta"], priority=2),
            AutomationField(name="a", label="Conta contrato", value="1", prompt_patterns=["conta"], priority=1),
        ]
        assert detect_requested_field("Informe a conta", fields).value == "1"

    def test_no_request(self):
        assert detect_requested_field("Obrigado pelo contato!", make_profile().fields) is None
        assert detect_requested_field("", make_profile().fields) is None
