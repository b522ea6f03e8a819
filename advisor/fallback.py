from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from advisor.schemas import (
    AdviceOutput,
    CutCandidate,
    ExpenseOptimization,
    FinancialSnapshot,
    InvestmentAdvice,
    RiskProfileAdvice,
    SavingsAdvice,
    UserPreferences,
)
from advisor.snapshot import round_money

ZERO = Decimal("0")

MAX_FALLBACK_CUT_CANDIDATES = 3
CUT_PERCENT_WITH_SPEND = 12
CUT_PERCENT_WITHOUT_SPEND = 8
PLACEHOLDER_CUT_PERCENT = 10


@dataclass(frozen=True)
class RiskCopy:
    title: str
    rationale: str
    options: tuple[str, ...]


@dataclass(frozen=True)
class FallbackCopy:
    summary: str
    savings_actions: tuple[str, ...]
    auto_transfer: str
    investment_guidance: tuple[str, ...]
    tips: tuple[str, ...]
    quick_wins: tuple[str, ...]
    low_risk: RiskCopy
    medium_risk: RiskCopy
    high_risk: RiskCopy


COPY_BY_LANGUAGE: dict[str, FallbackCopy] = {
    "en": FallbackCopy(
        summary=(
            "Your monthly view is ready. Keep your cashflow positive, protect an emergency "
            "buffer, and optimize recurring expenses first."
        ),
        savings_actions=(
            "Review discretionary expenses and set one weekly cap.",
            "Transfer savings right after income lands to avoid drift.",
            "Delay one non-essential purchase this week.",
        ),
        auto_transfer="Set an automatic transfer after each salary date toward your savings account.",
        investment_guidance=(
            "Build emergency reserves before taking higher volatility.",
            "Diversify and invest with fixed intervals instead of timing the market.",
            "Re-check your allocation once per month.",
        ),
        tips=(
            "Use weekly check-ins to catch overspending early.",
            "Prefer fixed bills negotiation before cutting essentials.",
            "Track one category deeply each month for better control.",
        ),
        quick_wins=(
            "Pause one subscription you did not use this month.",
            "Batch grocery shopping once per week.",
            "Set transport spending alerts.",
        ),
        low_risk=RiskCopy(
            title="Low Risk Path",
            rationale="Preserve capital with high liquidity and predictable returns.",
            options=("Emergency fund account", "Short-term deposits", "Low-volatility funds"),
        ),
        medium_risk=RiskCopy(
            title="Balanced Path",
            rationale="Balance growth with volatility tolerance over a longer horizon.",
            options=("Broad index funds", "Bond + equity mix", "Periodic rebalancing"),
        ),
        high_risk=RiskCopy(
            title="Growth Path",
            rationale="Higher upside with larger drawdowns; suitable only with strong reserves.",
            options=("Higher-equity allocation", "Sector concentration limits", "Strict risk limits"),
        ),
    ),
    "tr": FallbackCopy(
        summary=(
            "Aylık görünüm hazır. Nakit akışını pozitif tutup önce acil durum yastığını "
            "güçlendir, sonra düzenli giderleri optimize et."
        ),
        savings_actions=(
            "Değişken harcamalara haftalık tavan koy.",
            "Gelir yattığında birikimi otomatik ayır.",
            "Bu hafta zorunlu olmayan bir harcamayı ertele.",
        ),
        auto_transfer="Maaş gününden hemen sonra birikim hesabına otomatik transfer tanımla.",
        investment_guidance=(
            "Yüksek oynaklığa geçmeden önce acil durum birikimini tamamla.",
            "Piyasayı zamanlamak yerine düzenli periyotlarla yatırım yap.",
            "Dağılımını ayda bir kez kontrol et.",
        ),
        tips=(
            "Aşırı harcamayı erken görmek için haftalık kontrol yap.",
            "Temel ihtiyaçları kısmadan önce sabit faturaları pazarlık et.",
            "Her ay bir kategoriyi derin takip et.",
        ),
        quick_wins=(
            "Bu ay kullanmadığın bir aboneliği duraklat.",
            "Market alışverişini haftada bir toplu yap.",
            "Ulaşım harcaması için uyarı limiti koy.",
        ),
        low_risk=RiskCopy(
            title="Düşük Risk Planı",
            rationale="Sermayeyi koruyup likiditeyi yüksek tutmayı hedefler.",
            options=("Acil durum birikim hesabı", "Kısa vadeli mevduat", "Düşük oynaklık fonları"),
        ),
        medium_risk=RiskCopy(
            title="Dengeli Plan",
            rationale="Uzun vadede büyüme ve dalgalanma arasında denge kurar.",
            options=("Geniş endeks fonları", "Tahvil + hisse dengesi", "Periyodik dengeleme"),
        ),
        high_risk=RiskCopy(
            title="Büyüme Planı",
            rationale="Yüksek getiri potansiyeli karşılığında daha büyük dalgalanma içerir.",
            options=("Daha yüksek hisse ağırlığı", "Sektör yoğunluğu sınırı", "Sıkı risk limitleri"),
        ),
    ),
    "ru": FallbackCopy(
        summary=(
            "Месячный анализ готов. Сначала стабилизируйте денежный поток и резерв, "
            "затем оптимизируйте регулярные расходы."
        ),
        savings_actions=(
            "Установите недельный лимит на необязательные траты.",
            "Автоматически откладывайте деньги сразу после поступления дохода.",
            "Отложите одну необязательную покупку на эту неделю.",
        ),
        auto_transfer="Настройте автоперевод в сбережения сразу после дня поступления зарплаты.",
        investment_guidance=(
            "Сначала сформируйте резервный фонд перед ростом риска.",
            "Инвестируйте регулярно, а не пытайтесь угадывать рынок.",
            "Проверяйте распределение активов раз в месяц.",
        ),
        tips=(
            "Проводите еженедельный контроль расходов.",
            "Сначала оптимизируйте фиксированные платежи, затем переменные траты.",
            "Каждый месяц детально анализируйте одну категорию.",
        ),
        quick_wins=(
            "Отключите одну подписку, которой не пользовались в этом месяце.",
            "Покупайте продукты одним крупным походом в неделю.",
            "Поставьте лимиты-уведомления на транспорт.",
        ),
        low_risk=RiskCopy(
            title="Консервативный профиль",
            rationale="Сохранение капитала и высокая ликвидность.",
            options=("Резервный счет", "Краткосрочные депозиты", "Фонды с низкой волатильностью"),
        ),
        medium_risk=RiskCopy(
            title="Сбалансированный профиль",
            rationale="Баланс между ростом и риском на длинном горизонте.",
            options=("Широкие индексные фонды", "Смесь облигаций и акций", "Периодическая ребалансировка"),
        ),
        high_risk=RiskCopy(
            title="Агрессивный профиль",
            rationale="Выше потенциал доходности, но выше просадки.",
            options=("Более высокая доля акций", "Ограничение концентрации по секторам", "Жесткие риск-лимиты"),
        ),
    ),
}


def copy_for(language: str) -> FallbackCopy:
    try:
        return COPY_BY_LANGUAGE[language]
    except KeyError as exc:
        raise ValueError(f"Unsupported language: {language}") from exc


def build_fallback_advice(
    language: str, snapshot: FinancialSnapshot, preferences: UserPreferences
) -> AdviceOutput:
    """Deterministic advice built only from the snapshot and preferences.

    Args:
        language: One of ``tr``, ``en`` or ``ru``.
        snapshot: Aggregated month view; only income, category breakdown and
            total balance are read.
        preferences: Savings target rate and preferred risk profile.

    Returns:
        Advice that always validates under ``AdviceOutput``.
    """
    copy = copy_for(language)
    target_rate = min(1.0, max(0.0, preferences.savings_target_rate / 100))
    monthly_target_amount = round_money(
        max(ZERO, snapshot.overview.current_month_income * Decimal(str(target_rate)))
    )

    top_categories = snapshot.category_breakdown[:MAX_FALLBACK_CUT_CANDIDATES]
    if top_categories:
        cut_candidates = tuple(
            CutCandidate(
                label=item.name,
                suggested_reduction_percent=(
                    CUT_PERCENT_WITH_SPEND if item.total > ZERO else CUT_PERCENT_WITHOUT_SPEND
                ),
                alternative_action=copy.quick_wins[0],
            )
            for item in top_categories
        )
    else:
        cut_candidates = (
            CutCandidate(
                label=copy.quick_wins[1][:120],
                suggested_reduction_percent=PLACEHOLDER_CUT_PERCENT,
                alternative_action=copy.quick_wins[2],
            ),
        )

    profiles = [
        RiskProfileAdvice(level=level, title=risk.title, rationale=risk.rationale, options=risk.options)
        for level, risk in (
            ("low", copy.low_risk),
            ("medium", copy.medium_risk),
            ("high", copy.high_risk),
        )
    ]
    # Stable sort keeps low/medium/high order behind the preferred profile.
    profiles.sort(key=lambda profile: profile.level != preferences.risk_profile)

    balance_tip = copy.tips[0] if snapshot.balances.total_balance > ZERO else copy.tips[1]

    return AdviceOutput(
        summary=copy.summary,
        savings=SavingsAdvice(
            target_rate=target_rate,
            monthly_target_amount=monthly_target_amount,
            next_7_days_actions=copy.savings_actions,
            auto_transfer_suggestion=copy.auto_transfer,
        ),
        investment=InvestmentAdvice(
            profiles=tuple(profiles),
            guidance=copy.investment_guidance + (balance_tip,),
        ),
        expense_optimization=ExpenseOptimization(
            cut_candidates=cut_candidates,
            quick_wins=copy.quick_wins,
        ),
        tips=copy.tips,
    )
