import datetime
import json
from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession

from widgetchat.services import history, widget_store
from widgetchat.services.widget_blocks import WIDGET_DATA_MARKER

RECENT_ITEMS = 5

WIDGET_EDITOR_PROMPT = """You are helping the user edit a React widget component.

WIDGET: {name}
DESCRIPTION: {description}

DATA SCHEMA:
{schema}

CURRENT COMPONENT:
```jsx
{code}
```

The component receives {{ data, onDataChange }} where data is an array of items matching the schema.
When you change the component, reply with a short explanation followed by the COMPLETE updated component in a single ```jsx code block. Keep the existing field names."""


async def linked_widget_context(db: AsyncSession, conversation_id: str) -> List[Dict[str, Any]]:
    widgets = await widget_store.linked_widgets(db, conversation_id)
    context = []
    for widget in widgets:
        items = await widget_store.list_items(db, widget.id, limit=RECENT_ITEMS, newest_first=True)
        context.append(
            {
                "id": widget.id,
                "name": widget.name,
                "description": widget.description,
                "data_schema": widget.data_schema,
                "recent_data": [item.data for item in items],
            }
        )
    return context


def build_system_prompt(widgets: List[Dict[str, Any]], sent_at: datetime.datetime, tz_name: str) -> str:
    """
    System prompt for a chat turn.

    "Today" is the day the user's message was sent in their timezone, not the
    day the reply happens to be generated.
    """
    local = history.to_display_time(sent_at, tz_name)
    formatted_date = local.strftime("%A, %B %d, %Y")
    iso_date = local.date().isoformat()

    if not widgets:
        return (
            f"You are a helpful assistant. Today is {formatted_date}.\n\n"
            "You help users with their questions and tasks. Be conversational and helpful."
        )

    descriptions = "\n\n".join(
        f"### Widget: {w['name']}\n"
        f"ID: {w['id']}\n"
        f"Description: {w['description'] or 'No description'}\n"
        f"Data Schema:\n{json.dumps(w['data_schema'], indent=2)}\n"
        f"Recent Data (last {RECENT_ITEMS} entries):\n"
        f"{json.dumps(w['recent_data'], indent=2) if w['recent_data'] else 'No data yet'}"
        for w in widgets
    )

    return f"""You are a helpful assistant with access to connected data widgets. Today is {formatted_date} ({iso_date}).

## Connected Widgets
This conversation is linked to the following data-tracking widgets:

{descriptions}

## Your Responsibilities
1. Answer the user's question naturally and helpfully
2. When the user mentions information that belongs in a widget, or corrects earlier information, record it

## Data Output Format
If data operations are needed, add this block at the very END of your response, after your natural reply:

{WIDGET_DATA_MARKER}
{{
  "thinking": "your reasoning about what data to extract and why",
  "updates": [
    {{
      "widgetId": "widget id",
      "widgetName": "Widget Name",
      "data": {{ ...data matching the widget's schema... }},
      "action": "add" | "update" | "replace" | "delete",
      "targetDate": "YYYY-MM-DD (for delete/update to match)",
      "targetType": "optional type value to match (e.g. 'dinner')",
      "reasoning": "why this operation"
    }}
  ]
}}
```

ACTIONS:
- "add": add a new entry
- "update" or "replace": update the entry matching targetDate + targetType
- "delete": remove the entry matching targetDate + targetType (no data needed)

IMPORTANT:
- The "date" field is "{iso_date}" for anything referring to "today", "tonight" or "now"
- Use "delete" if the user says something was wrong or didn't happen
- Use "update" if the user corrects existing data ("actually", "I meant")
- Only include the block when there are real data operations
- Never mention the block in your reply

Example: the user says "I had a caesar salad for lunch, about 400 calories" and the reply ends with
{WIDGET_DATA_MARKER}
{{"thinking": "A meal with calories.", "updates": [{{"widgetId": "...", "widgetName": "Meal Tracker", "action": "add", "data": {{"date": "{iso_date}", "meal": "lunch", "food": "Caesar salad", "calories": 400}}, "reasoning": "User reported lunch"}}]}}
```
If the user later says "actually I didn't have lunch", the block is
{WIDGET_DATA_MARKER}
{{"thinking": "Lunch was skipped.", "updates": [{{"widgetId": "...", "widgetName": "Meal Tracker", "action": "delete", "targetDate": "{iso_date}", "targetType": "lunch", "reasoning": "User skipped lunch"}}]}}
```"""


def build_widget_editor_prompt(widget) -> str:
    return WIDGET_EDITOR_PROMPT.format(
        name=widget.name,
        description=widget.description or "",
        schema=json.dumps(widget.data_schema, indent=2),
        code=widget.component_code or "",
    )
